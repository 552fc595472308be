"""Shared fixtures: an in-memory stand-in for the motor collections the
repositories touch, plus seeded customer/provider identities."""

import copy
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from bson import ObjectId
from pymongo.errors import OperationFailure

from marketplace_chat.core.config import Settings
from marketplace_chat.models.identity import Identity
from marketplace_chat.repositories.directory_repository import DirectoryRepository
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.schemas.message import Message
from marketplace_chat.services.queries import CustomerQueries, ProviderQueries
from marketplace_chat.utils.realtime_bus import LocalBus

CUSTOMER_ID = "cust-1"
OTHER_CUSTOMER_ID = "cust-2"
PROVIDER_USER_ID = "prov-user-1"
PROVIDER_ID = "prov-1"

T0 = datetime(2026, 10, 1, 15, 0, tzinfo=timezone.utc)


def _match(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(_match(doc, q) for q in cond):
                return False
            continue
        if key == "$and":
            if not all(_match(doc, q) for q in cond):
                return False
            continue
        value = doc.get(key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$gt" and not (value is not None and value > arg):
                    return False
                if op == "$gte" and not (value is not None and value >= arg):
                    return False
                if op == "$lt" and not (value is not None and value < arg):
                    return False
                if op == "$in" and value not in arg:
                    return False
                if op == "$ne" and value == arg:
                    return False
        elif value != cond:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]) -> None:
        self._docs = docs

    def sort(self, key_or_list, direction: Optional[int] = None) -> "FakeCursor":
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: d.get(field), reverse=order < 0)
        return self

    def limit(self, n: int) -> "FakeCursor":
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    """Subset of AsyncIOMotorCollection used by the repositories.

    ``reject_compound`` makes ``find`` refuse filters combining ``$or`` with
    other fields, the way a restrictive store API would. ``fail_with`` maps an
    operation name to an exception raised on every call; ``fail_next`` fails
    only the next few calls.
    """

    def __init__(self) -> None:
        self.docs: List[Dict[str, Any]] = []
        self.reject_compound = False
        self.fail_with: Dict[str, Exception] = {}
        self._fail_times: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []

    def fail_next(self, op: str, exc: Exception, times: int = 1) -> None:
        self._fail_times[op] = [exc] * times

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_with:
            raise self.fail_with[op]
        pending = self._fail_times.get(op)
        if pending:
            raise pending.pop()

    async def create_index(self, *args, **kwargs) -> str:
        return "idx"

    async def insert_one(self, doc: Dict[str, Any]):
        self._check("insert_one")
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    def find(self, query: Optional[Dict[str, Any]] = None) -> FakeCursor:
        self._check("find")
        query = query or {}
        if self.reject_compound and "$or" in query and len(query) > 1:
            raise OperationFailure("compound filter rejected")
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _match(d, query)])

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._check("find_one")
        for doc in self.docs:
            if _match(doc, query):
                return copy.deepcopy(doc)
        return None

    async def count_documents(self, query: Dict[str, Any]) -> int:
        self._check("count_documents")
        return sum(1 for d in self.docs if _match(d, query))

    async def update_many(self, query: Dict[str, Any], update: Dict[str, Any]):
        self._check("update_many")
        modified = 0
        for doc in self.docs:
            if _match(doc, query):
                changes = update.get("$set", {})
                if any(doc.get(k) != v for k, v in changes.items()):
                    doc.update(changes)
                    modified += 1
        return SimpleNamespace(modified_count=modified)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        self._check("update_one")
        for doc in self.docs:
            if _match(doc, query):
                doc.update(update.get("$set", {}))
                return SimpleNamespace(modified_count=1, upserted_id=None)
        if upsert:
            doc = {**query, **update.get("$set", {}), "_id": ObjectId()}
            self.docs.append(doc)
            return SimpleNamespace(modified_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(modified_count=0, upserted_id=None)


class FakeDatabase:
    def __init__(self) -> None:
        self._collections: Dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        return self._collections.setdefault(name, FakeCollection())

    def __getitem__(self, name: str) -> FakeCollection:
        return self.get_collection(name)

    async def list_collection_names(self) -> List[str]:
        return list(self._collections)


def make_message(
    id: str,
    sender_id: str = CUSTOMER_ID,
    receiver_id: str = PROVIDER_USER_ID,
    provider_id: str = PROVIDER_ID,
    content: str = "hello",
    seconds: float = 0,
    is_read: bool = False,
) -> Message:
    return Message(
        id=id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        provider_id=provider_id,
        content=content,
        is_read=is_read,
        created_at=T0 + timedelta(seconds=seconds),
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        CONVERSATION_LIST_POLL_SECONDS=3600,
        CONVERSATION_POLL_SECONDS=3600,
        SYNC_FAILURE_THRESHOLD=3,
        REDIS_URL="",
    )


@pytest.fixture
def customer() -> Identity:
    return Identity(user_id=CUSTOMER_ID, role="customer")


@pytest.fixture
def provider() -> Identity:
    return Identity(user_id=PROVIDER_USER_ID, role="provider")


@pytest.fixture
def customer_queries(customer) -> CustomerQueries:
    return CustomerQueries(customer)


@pytest.fixture
def provider_queries(provider) -> ProviderQueries:
    return ProviderQueries(provider, PROVIDER_ID)


@pytest.fixture
def db() -> FakeDatabase:
    database = FakeDatabase()
    database["providers"].docs.append(
        {"_id": PROVIDER_ID, "user_id": PROVIDER_USER_ID, "business_name": "Ana's Plumbing"}
    )
    database["profiles"].docs.append({"_id": "profile-1", "user_id": CUSTOMER_ID, "display_name": "Carl"})
    return database


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus()


@pytest.fixture
def store(db, bus) -> MessageRepository:
    return MessageRepository(db, bus=bus)


@pytest.fixture
def directory(db) -> DirectoryRepository:
    return DirectoryRepository(db)


class RecordingNotifier:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.error = error

    async def notify_message(self, receiver_id: str, sender_name: str, content: str, data=None):
        self.calls.append({"receiver_id": receiver_id, "sender_name": sender_name, "content": content})
        if self.error is not None:
            raise self.error
        return {}


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def sessions_cleanup():
    """Collects surfaces/sessions and tears them down after the test."""
    opened = []
    yield opened
    for item in opened:
        if hasattr(item, "stop"):
            await item.stop()
        else:
            await item.unmount()
