import asyncio
import logging
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pyfcm import FCMNotification
from pymongo.errors import PyMongoError

from marketplace_chat.core.config import Settings, get_settings
from marketplace_chat.core.errors import NotificationError
from marketplace_chat.models.notification import NotificationDocument
from marketplace_chat.repositories.device_repository import DeviceRepository
from marketplace_chat.schemas.message import utc_now_ms

logger = logging.getLogger(__name__)

MESSAGE_TITLE = "💬 New Message"


def preview(content: str, limit: int = 50) -> str:
    return content[:limit] + ("..." if len(content) > limit else "")


def build_message_notification(receiver_id: str, sender_name: str, content: str, limit: int = 50) -> NotificationDocument:
    return {
        "user_id": receiver_id,
        "title": MESSAGE_TITLE,
        "message": f"{sender_name}: {preview(content, limit)}",
        "type": "message",
        "link": "/messages",
        "is_read": False,
        "created_at": utc_now_ms(),
    }


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[dict] = None) -> None:
        return


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[dict] = None) -> None:
        payload = {k: str(v) for k, v in (data or {}).items()}
        for token in tokens:
            # pyfcm is synchronous
            try:
                await asyncio.to_thread(
                    self._client.notify,
                    fcm_token=token,
                    notification_title=title,
                    notification_body=body,
                    data_payload=payload,
                )
            except Exception:
                logger.warning("FCM push to a device failed", exc_info=True)


_push = None


async def get_push():
    global _push
    if _push is not None:
        return _push
    settings = get_settings()
    if settings.fcm_enabled:
        _push = FcmPush(settings.FCM_SERVICE_ACCOUNT_FILE, settings.FCM_PROJECT_ID)
    else:
        _push = NoopPush()
    return _push


class Notifier:
    """Notification collaborator: an in-app record plus an optional device push."""

    def __init__(self, db: AsyncIOMotorDatabase, push=None, settings: Optional[Settings] = None) -> None:
        self._collection = db.get_collection("notifications")
        self._devices = DeviceRepository(db)
        self._push = push or NoopPush()
        self._preview_length = (settings or get_settings()).NOTIFICATION_PREVIEW_LENGTH

    async def notify_message(self, receiver_id: str, sender_name: str, content: str, data: Optional[dict] = None) -> NotificationDocument:
        doc = build_message_notification(receiver_id, sender_name, content, self._preview_length)
        try:
            result = await self._collection.insert_one(doc)
        except PyMongoError as exc:
            raise NotificationError(f"Notification for {receiver_id} could not be stored") from exc
        doc["_id"] = str(result.inserted_id)

        if getattr(self._push, "enabled", False):
            try:
                tokens = await self._devices.get_tokens(receiver_id, platform="fcm")
            except PyMongoError as exc:
                raise NotificationError(f"Device lookup for {receiver_id} failed") from exc
            await self._push.send_fcm([t["token"] for t in tokens], doc["title"], doc["message"], data)
        return doc
