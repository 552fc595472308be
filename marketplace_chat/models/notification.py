from datetime import datetime
from typing import Literal, TypedDict


NotificationType = Literal["info", "success", "warning", "error", "message"]


class NotificationDocument(TypedDict, total=False):
    _id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    link: str
    is_read: bool
    created_at: datetime
