from datetime import datetime, timezone
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace_chat.models.message import MessageDocument


def utc_now_ms() -> datetime:
    """Current UTC time truncated to the store's millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


class MessageDraft(BaseModel):
    """An outbound message before the store assigns id and timestamp."""

    sender_id: str
    receiver_id: str
    provider_id: str
    content: str
    booking_id: Optional[str] = None


class Message(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    receiver_id: str
    provider_id: str
    content: str
    is_read: bool = False
    created_at: datetime
    booking_id: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    @classmethod
    def from_document(cls, doc: MessageDocument) -> "Message":
        return cls(
            id=str(doc["_id"]),
            sender_id=doc["sender_id"],
            receiver_id=doc["receiver_id"],
            provider_id=doc["provider_id"],
            content=doc["content"],
            is_read=bool(doc.get("is_read", False)),
            created_at=doc["created_at"],
            booking_id=doc.get("booking_id"),
        )

    def as_read(self) -> "Message":
        return self if self.is_read else self.model_copy(update={"is_read": True})


class ChangeEvent(BaseModel):
    """A change-feed event; carries the full inserted or updated record."""

    event: Literal["INSERT", "UPDATE"]
    record: Message


class SendMessageRequest(BaseModel):

    content: str = Field(min_length=1)
    booking_id: Optional[str] = None
