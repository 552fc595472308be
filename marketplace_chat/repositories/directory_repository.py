import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from marketplace_chat.core.errors import PersistenceError, RouteResolutionError
from marketplace_chat.models.identity import Identity
from marketplace_chat.models.provider import ProfileDocument, ProviderDocument
from marketplace_chat.schemas.conversation import ConversationSummary, CounterpartProfile

logger = logging.getLogger(__name__)


def _as_id(value: str):
    return ObjectId(value) if ObjectId.is_valid(value) else value


class DirectoryRepository:
    """Read-only lookups into the provider and profile collections."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._providers = db.get_collection("providers")
        self._profiles = db.get_collection("profiles")

    async def _find_one(self, collection, query: Dict[str, Any]):
        try:
            doc = await collection.find_one(query)
        except PyMongoError as exc:
            logger.error("Directory lookup failed: %s", exc)
            raise PersistenceError("Directory lookup failed") from exc
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def get_provider(self, provider_id: str) -> Optional[ProviderDocument]:
        return await self._find_one(self._providers, {"_id": _as_id(provider_id)})

    async def get_provider_by_user(self, user_id: str) -> Optional[ProviderDocument]:
        return await self._find_one(self._providers, {"user_id": user_id})

    async def get_profile(self, user_id: str) -> Optional[ProfileDocument]:
        return await self._find_one(self._profiles, {"user_id": user_id})

    async def get_provider_owner(self, provider_id: str) -> Optional[str]:
        """Resolve the user identity that owns ``provider_id``."""
        try:
            provider = await self.get_provider(provider_id)
        except PersistenceError as exc:
            raise RouteResolutionError(f"Recipient lookup failed for provider {provider_id}") from exc
        if not provider:
            return None
        return provider.get("user_id")

    @staticmethod
    def describe_provider(provider: Optional[ProviderDocument]) -> CounterpartProfile:
        provider = provider or {}
        return CounterpartProfile(
            name=provider.get("business_name") or "Provider",
            avatar_url=provider.get("profile_picture_url"),
            service_type=provider.get("service_type"),
        )

    async def describe_customer(self, user_id: str) -> CounterpartProfile:
        profile = await self.get_profile(user_id) or {}
        return CounterpartProfile(name=profile.get("display_name") or "Customer", avatar_url=profile.get("avatar_url"))

    async def describe_counterpart(self, summary: ConversationSummary) -> CounterpartProfile:
        if summary.counterpart_type == "provider":
            return self.describe_provider(await self.get_provider(summary.provider_ref))
        return await self.describe_customer(summary.counterpart_id)

    async def get_display_name(self, identity: Identity) -> str:
        if identity.is_provider:
            provider = self.describe_provider(await self.get_provider_by_user(identity.user_id))
            return provider.name
        return (await self.describe_customer(identity.user_id)).name
