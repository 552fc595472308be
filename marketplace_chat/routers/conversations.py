from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from marketplace_chat.core.errors import ConversationNotFoundError
from marketplace_chat.models.identity import Identity
from marketplace_chat.schemas.message import SendMessageRequest
from marketplace_chat.services.chat_service import ChatService
from marketplace_chat.utils.dependencies import get_chat_service, get_current_identity


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(identity: Identity = Depends(get_current_identity), service: ChatService = Depends(get_chat_service)):
    return await service.list_conversations(identity)


@router.get("/{key}")
async def get_conversation(key: str, identity: Identity = Depends(get_current_identity), service: ChatService = Depends(get_chat_service)):
    summary = await service.summary_for(identity, key)
    if summary is None:
        raise ConversationNotFoundError(f"No conversation {key}")
    return summary


@router.get("/{key}/messages")
async def list_messages(
    key: str,
    since: Optional[datetime] = Query(None, description="Only messages created after this instant"),
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
):
    messages = await service.get_messages(identity, key, since)
    return {"items": messages}


@router.post("/{key}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    key: str,
    body: SendMessageRequest,
    identity: Identity = Depends(get_current_identity),
    service: ChatService = Depends(get_chat_service),
):
    return await service.send_message(identity, key, body.content, booking_id=body.booking_id)


@router.post("/{key}/read")
async def mark_read(key: str, identity: Identity = Depends(get_current_identity), service: ChatService = Depends(get_chat_service)):
    updated = await service.mark_read(identity, key)
    return {"updated": updated}
