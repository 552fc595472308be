import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Set

from marketplace_chat.core.errors import MessagingError, NotificationError, ValidationError
from marketplace_chat.models.identity import Identity
from marketplace_chat.schemas.message import Message, MessageDraft
from marketplace_chat.services.aggregator import ConversationIndex
from marketplace_chat.services.timeline import MessageTimeline

logger = logging.getLogger(__name__)


@dataclass
class ComposeBox:
    """The outbound text box. Text is never lost on a failed send."""

    text: str = ""
    error: Optional[str] = None
    sending: bool = False


class SendPipeline:

    def __init__(self, identity: Identity, queries, store, directory, notifier, max_length: int = 2000) -> None:
        self._identity = identity
        self._queries = queries
        self._store = store
        self._directory = directory
        self._notifier = notifier
        self._max_length = max_length
        self._background: Set[asyncio.Task] = set()

    async def send(
        self,
        compose: ComposeBox,
        key: Optional[str],
        timeline: Optional[MessageTimeline] = None,
        index: Optional[ConversationIndex] = None,
        booking_id: Optional[str] = None,
    ) -> Message:
        """Send the composed text to the conversation ``key``.

        Raises ValidationError, RouteResolutionError or PersistenceError; in
        every case ``compose.text`` still holds what the user typed.
        """
        text = compose.text.strip()
        if not text:
            raise self._fail(compose, ValidationError("Message cannot be empty"))
        if not key:
            raise self._fail(compose, ValidationError("No conversation selected"))
        if len(text) > self._max_length:
            raise self._fail(compose, ValidationError(f"Message exceeds {self._max_length} characters"))

        typed = compose.text
        compose.text = ""
        compose.error = None
        compose.sending = True
        try:
            receiver_id, provider_id = await self._queries.resolve_route(key, self._directory)
            draft = MessageDraft(
                sender_id=self._identity.user_id,
                receiver_id=receiver_id,
                provider_id=provider_id,
                content=text,
                booking_id=booking_id,
            )
            message = await self._store.insert(draft, self._identity.user_id)
        except MessagingError as exc:
            compose.text = typed
            logger.info("Send to %s failed: %s", key, exc.detail)
            raise self._fail(compose, exc)
        finally:
            compose.sending = False

        if timeline is not None:
            timeline.merge([message])
        if index is not None:
            index.apply(message)

        task = asyncio.create_task(self._notify(message))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return message

    async def drain(self) -> None:
        """Wait for outstanding notifications (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _notify(self, message: Message) -> None:
        try:
            sender_name = await self._directory.get_display_name(self._identity)
            await self._notifier.notify_message(
                message.receiver_id,
                sender_name,
                message.content,
                data={"message_id": message.id, "provider_id": message.provider_id, "from": message.sender_id},
            )
        except NotificationError as exc:
            logger.warning("Notification for message %s failed: %s", message.id, exc.detail)
        except Exception:
            logger.warning("Notification for message %s failed", message.id, exc_info=True)

    @staticmethod
    def _fail(compose: ComposeBox, exc: MessagingError) -> MessagingError:
        compose.error = exc.detail
        return exc
