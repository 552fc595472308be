import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from marketplace_chat.core.config import get_settings
from marketplace_chat.core.errors import AuthenticationError, MessagingError, RouteResolutionError
from marketplace_chat.database.connection import mongo_db_dependency
from marketplace_chat.models.identity import Identity
from marketplace_chat.repositories.directory_repository import DirectoryRepository
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.services.chat_service import ChatService
from marketplace_chat.services.session import MessagingSession
from marketplace_chat.utils.dependencies import get_chat_service, get_current_identity
from marketplace_chat.utils.notifications import Notifier, get_push
from marketplace_chat.utils.realtime_bus import get_bus
from marketplace_chat.utils.security import identity_from_token
from marketplace_chat.utils.websocket_manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])
manager = ConnectionManager()


@router.get("/unread/count")
async def unread_count(identity: Identity = Depends(get_current_identity), service: ChatService = Depends(get_chat_service)):
    return await service.unread_count(identity)


def error_frame(exc: MessagingError) -> dict:
    return {"type": "error", "code": exc.error_code, "message": exc.detail}


async def handle_command(session: MessagingSession, msg: dict) -> None:
    kind = msg.get("type")
    if kind == "open":
        await session.open_conversation(str(msg.get("key") or ""))
    elif kind == "close":
        await session.close_conversation()
    elif kind == "send":
        await session.send(str(msg.get("content") or ""), booking_id=msg.get("booking_id"))
    elif kind == "refresh":
        await session.refresh()
    else:
        raise MessagingError(f"Unknown command {kind!r}", error_code="UNKNOWN_COMMAND")


@router.websocket("/ws")
async def messaging_socket(websocket: WebSocket, db = Depends(mongo_db_dependency)):
    # JWT via query string: ?token=...
    try:
        identity = identity_from_token(websocket.query_params.get("token"))
    except AuthenticationError:
        await websocket.close(code=4401)
        return

    settings = get_settings()
    bus = await get_bus()
    store = MessageRepository(db, bus=bus, max_content_length=settings.MAX_MESSAGE_LENGTH)
    notifier = Notifier(db, push=await get_push(), settings=settings)

    async def push_snapshot(session: MessagingSession) -> None:
        if session.conversations is not None:
            await manager.send_json(websocket, session.snapshot())

    session = MessagingSession(identity, store, DirectoryRepository(db), notifier, bus, settings, on_change=push_snapshot)
    await manager.connect(identity.user_id, websocket)
    try:
        try:
            await session.start()
        except MessagingError as exc:
            await manager.send_json(websocket, error_frame(exc))
            await websocket.close(code=4404 if isinstance(exc, RouteResolutionError) else 1011)
            return
        await push_snapshot(session)

        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                msg = None
            if not isinstance(msg, dict):
                await manager.send_json(websocket, {"type": "error", "code": "INVALID_PAYLOAD", "message": "Expected an object"})
                continue
            try:
                await handle_command(session, msg)
            except MessagingError as exc:
                await manager.send_json(websocket, error_frame(exc))
            await push_snapshot(session)
    except WebSocketDisconnect:
        logger.info("Messaging socket closed for %s", identity.user_id)
    finally:
        manager.disconnect(identity.user_id, websocket)
        await session.stop()
