import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from marketplace_chat.core.config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> None:
    global _client
    settings = get_settings()
    # tz_aware keeps created_at comparable with the timestamps we generate
    _client = AsyncIOMotorClient(settings.MONGO_URL, tz_aware=True)
    logger.info("Connected to MongoDB database %s", settings.MONGO_DB)


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not initialised")
    return _client[get_settings().MONGO_DB]


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
