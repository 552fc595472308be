import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import OperationFailure, PyMongoError

from marketplace_chat.core.errors import PersistenceError
from marketplace_chat.models.message import MessageDocument
from marketplace_chat.schemas.message import ChangeEvent, Message, MessageDraft, utc_now_ms
from marketplace_chat.services.queries import QueryScope
from marketplace_chat.utils.realtime_bus import user_channel

logger = logging.getLogger(__name__)

SORT = [("created_at", ASCENDING), ("_id", ASCENDING)]


def _sorted(messages: List[Message]) -> List[Message]:
    return sorted(messages, key=lambda m: m.sort_key)


class MessageRepository:
    """Store adapter for the append-only ``messages`` collection.

    Every insert and read flip is also published on the realtime bus so that
    live surfaces can pick it up without waiting for their next poll.
    """

    def __init__(self, db: AsyncIOMotorDatabase, bus=None, max_content_length: int = 2000) -> None:
        self._db = db
        self._bus = bus
        self._max_content_length = max_content_length

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("provider_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index([("sender_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index([("receiver_id", ASCENDING), ("is_read", ASCENDING)])

    async def insert(self, draft: MessageDraft, caller_id: str) -> Message:
        for field in ("sender_id", "receiver_id", "provider_id"):
            if not getattr(draft, field):
                raise PersistenceError(f"Rejected: {field} is required", error_code="REJECTED")
        content = draft.content.strip()
        if not content:
            raise PersistenceError("Rejected: content is required", error_code="REJECTED")
        if len(content) > self._max_content_length:
            raise PersistenceError("Rejected: content too long", error_code="REJECTED")
        if caller_id not in (draft.sender_id, draft.receiver_id):
            raise PersistenceError("Rejected: caller is not a participant", error_code="REJECTED")
        if draft.sender_id == draft.receiver_id:
            raise PersistenceError("Rejected: sender and receiver are the same", error_code="REJECTED")

        doc: MessageDocument = {
            "sender_id": draft.sender_id,
            "receiver_id": draft.receiver_id,
            "provider_id": draft.provider_id,
            "content": content,
            "is_read": False,
            "created_at": utc_now_ms(),
            "booking_id": draft.booking_id,
        }
        try:
            result = await self.collection.insert_one(doc)
        except PyMongoError as exc:
            logger.error("Message insert failed: %s", exc)
            raise PersistenceError("Message could not be saved") from exc
        doc["_id"] = str(result.inserted_id)
        message = Message.from_document(doc)
        await self._publish("INSERT", message)
        return message

    async def fetch_conversation(self, scope: QueryScope) -> List[Message]:
        return await self._find_scoped(scope, {})

    async def fetch_since(self, scope: QueryScope, since: Optional[datetime]) -> List[Message]:
        if since is None:
            return await self._find_scoped(scope, {})
        return await self._find_scoped(scope, {"created_at": {"$gt": since}})

    async def _find_scoped(self, scope: QueryScope, extra: Dict[str, Any]) -> List[Message]:
        try:
            docs = await self.collection.find({**scope.filter, **extra}).sort(SORT).to_list(length=None)
            return _sorted([Message.from_document(d) for d in docs])
        except OperationFailure as exc:
            # compound predicate rejected: fetch the whole group and filter exactly
            logger.warning("Scoped query rejected (%s), filtering group client-side", exc)
        except PyMongoError as exc:
            raise PersistenceError("Message query failed") from exc

        try:
            docs = await self.collection.find({**scope.group_filter, **extra}).sort(SORT).to_list(length=None)
        except PyMongoError as exc:
            raise PersistenceError("Message query failed") from exc
        messages = [Message.from_document(d) for d in docs]
        return _sorted([m for m in messages if scope.matches(m)])

    async def mark_read(self, self_id: str, group_key: str, counterpart_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"receiver_id": self_id, "provider_id": group_key, "is_read": False}
        if counterpart_id:
            query["sender_id"] = counterpart_id
        try:
            docs = await self.collection.find(query).to_list(length=None)
            if not docs:
                return 0
            result = await self.collection.update_many(
                {"_id": {"$in": [d["_id"] for d in docs]}, "is_read": False},
                {"$set": {"is_read": True}},
            )
        except PyMongoError as exc:
            raise PersistenceError("Read state could not be saved") from exc
        for doc in docs:
            doc["is_read"] = True
            await self._publish("UPDATE", Message.from_document(doc))
        return result.modified_count or 0

    async def count_unread(self, self_id: str, group_key: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"receiver_id": self_id, "is_read": False}
        if group_key:
            query["provider_id"] = group_key
        try:
            return await self.collection.count_documents(query)
        except PyMongoError as exc:
            raise PersistenceError("Unread count query failed") from exc

    async def get(self, message_id: str) -> Optional[Message]:
        key = ObjectId(message_id) if ObjectId.is_valid(message_id) else message_id
        try:
            doc = await self.collection.find_one({"_id": key})
        except PyMongoError as exc:
            raise PersistenceError("Message query failed") from exc
        return Message.from_document(doc) if doc else None

    async def _publish(self, event: str, message: Message) -> None:
        if self._bus is None:
            return
        payload = ChangeEvent(event=event, record=message).model_dump_json()
        for participant in {message.sender_id, message.receiver_id}:
            try:
                await self._bus.publish(user_channel(participant), payload)
            except Exception:
                # the poll picks the record up on its next tick
                logger.warning("Change event publish failed for %s", message.id, exc_info=True)
