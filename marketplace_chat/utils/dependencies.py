from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketplace_chat.core.config import get_settings
from marketplace_chat.database.connection import mongo_db_dependency
from marketplace_chat.models.identity import Identity
from marketplace_chat.repositories.directory_repository import DirectoryRepository
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.services.chat_service import ChatService
from marketplace_chat.utils.notifications import Notifier, get_push
from marketplace_chat.utils.realtime_bus import get_bus
from marketplace_chat.utils.security import identity_from_token

bearer = HTTPBearer(auto_error=False)


async def get_current_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Identity:
    return identity_from_token(credentials.credentials if credentials else None)


async def get_message_repository(db: AsyncIOMotorDatabase = Depends(mongo_db_dependency)) -> MessageRepository:
    settings = get_settings()
    return MessageRepository(db, bus=await get_bus(), max_content_length=settings.MAX_MESSAGE_LENGTH)


async def get_notifier(db: AsyncIOMotorDatabase = Depends(mongo_db_dependency)) -> Notifier:
    return Notifier(db, push=await get_push(), settings=get_settings())


def get_chat_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    message_repo: MessageRepository = Depends(get_message_repository),
    notifier: Notifier = Depends(get_notifier),
) -> ChatService:
    return ChatService(message_repo, DirectoryRepository(db), notifier, get_settings())
