from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketplace_chat.models.device import DeviceDocument, PushPlatform
from marketplace_chat.schemas.message import utc_now_ms


class DeviceRepository:
    """Push tokens registered by a user's devices."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def register(self, user_id: str, platform: PushPlatform, token: str) -> DeviceDocument:
        seen = utc_now_ms()
        await self.collection.update_one(
            {"user_id": user_id, "platform": platform, "token": token},
            {"$set": {"last_seen_at": seen}},
            upsert=True,
        )
        return {"user_id": user_id, "platform": platform, "token": token, "last_seen_at": seen}

    async def get_tokens(self, user_id: str, platform: Optional[PushPlatform] = None) -> List[DeviceDocument]:
        query: Dict[str, Any] = {"user_id": user_id}
        if platform:
            query["platform"] = platform
        return await self.collection.find(query).to_list(length=100)
