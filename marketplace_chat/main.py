import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketplace_chat.core.config import get_settings
from marketplace_chat.core.error_handlers import messaging_exception_handler
from marketplace_chat.core.errors import MessagingError
from marketplace_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.routers.chat import router as chat_router
from marketplace_chat.routers.conversations import router as conversations_router
from marketplace_chat.routers.devices import router as devices_router
from marketplace_chat.utils.realtime_bus import close_bus, get_bus

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("marketplace_chat.main")


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    await MessageRepository(get_database()).ensure_indexes()
    bus = await get_bus()
    logger.info("Change feed: %s", type(bus).__name__)
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
app.add_exception_handler(MessagingError, messaging_exception_handler)  # type: ignore[arg-type]

app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(devices_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Marketplace chat is running", "collections": collections}
