from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace_chat.database.connection import mongo_db_dependency
from marketplace_chat.models.device import PushPlatform
from marketplace_chat.models.identity import Identity
from marketplace_chat.repositories.device_repository import DeviceRepository
from marketplace_chat.utils.dependencies import get_current_identity


router = APIRouter(prefix="/devices", tags=["push"])


class DeviceRegistration(BaseModel):

    platform: PushPlatform = "fcm"
    token: str = Field(min_length=1)


@router.post("/register")
async def register_device(payload: DeviceRegistration, identity: Identity = Depends(get_current_identity), db = Depends(mongo_db_dependency)):
    repo = DeviceRepository(db)
    doc = await repo.register(identity.user_id, payload.platform, payload.token)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}
