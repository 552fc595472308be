from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel


class CounterpartProfile(BaseModel):
    """Display data for the other party of a conversation."""

    name: str
    avatar_url: Optional[str] = None
    service_type: Optional[str] = None


class ConversationSummary(BaseModel):
    """Derived view of one customer <-> provider exchange; never persisted."""

    key: str
    counterpart_id: str
    counterpart_type: Literal["customer", "provider"]
    provider_ref: str
    last_message: str
    last_message_at: datetime
    last_message_id: str
    unread_count: int = 0
    # filled from the directory once known
    counterpart_name: Optional[str] = None
    counterpart_avatar_url: Optional[str] = None
    service_type: Optional[str] = None


class ConversationList(BaseModel):

    items: List[ConversationSummary]
    unread_total: int


class UnreadCount(BaseModel):

    unread: int
    provider_id: Optional[str] = None
