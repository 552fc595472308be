from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    sender_id: str
    receiver_id: str
    # group key: one customer <-> one provider
    provider_id: str
    content: str
    is_read: bool
    created_at: datetime
    booking_id: Optional[str]
