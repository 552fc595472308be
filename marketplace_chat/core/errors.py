"""
Exception hierarchy for the messaging core.

Errors that affect data integrity (a failed send, an unresolvable recipient)
propagate to the caller. Errors that only affect freshness (a missed poll, a
failed read-mark persist) are absorbed by the sync layer and corrected on the
next successful cycle.
"""

from typing import Optional


class MessagingError(Exception):
    """Base exception for all messaging errors."""

    status_code: int = 500
    default_detail: str = "Messaging error"

    def __init__(self, detail: Optional[str] = None, error_code: Optional[str] = None):
        self.detail = detail or self.default_detail
        self.error_code = error_code or self.__class__.__name__
        super().__init__(self.detail)


class ValidationError(MessagingError):
    """Rejected before any store call (empty message, missing counterpart)."""

    status_code = 422
    default_detail = "Invalid message"


class RouteResolutionError(MessagingError):
    """The receiver identity for a send could not be determined."""

    status_code = 404
    default_detail = "Recipient not found"


class ConversationNotFoundError(MessagingError):
    """No message exists between the caller and the requested counterpart."""

    status_code = 404
    default_detail = "Conversation not found"


class PersistenceError(MessagingError):
    """An insert or update was rejected by the store."""

    status_code = 503
    default_detail = "Message store unavailable"


class SyncTransientError(MessagingError):
    """A single poll or subscription tick failed."""

    status_code = 503
    default_detail = "Sync tick failed"


class NotificationError(MessagingError):
    """Delivering the new-message notification failed."""

    default_detail = "Notification delivery failed"


class AuthenticationError(MessagingError):
    """Missing or invalid caller identity."""

    status_code = 401
    default_detail = "Authentication failed"
