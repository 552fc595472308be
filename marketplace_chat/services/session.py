import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from marketplace_chat.core.config import Settings
from marketplace_chat.core.errors import ValidationError
from marketplace_chat.models.identity import Identity
from marketplace_chat.schemas.message import Message
from marketplace_chat.services.badge import UnreadBadge
from marketplace_chat.services.queries import RoleQueries, build_queries
from marketplace_chat.services.read_state import ReadStateTracker
from marketplace_chat.services.send_pipeline import ComposeBox, SendPipeline
from marketplace_chat.services.sync_engine import ConversationListSurface, ConversationSurface, SyncSurface

logger = logging.getLogger(__name__)


class MessagingSession:
    """Live messaging state of one signed-in caller.

    Owns the conversation list surface for the whole session and at most one
    open conversation surface at a time.
    """

    def __init__(
        self,
        identity: Identity,
        store,
        directory,
        notifier,
        bus,
        settings: Settings,
        on_change: Optional[Callable[["MessagingSession"], Any]] = None,
    ) -> None:
        self.identity = identity
        self._store = store
        self._directory = directory
        self._notifier = notifier
        self._bus = bus
        self._settings = settings
        self._on_change = on_change

        self.queries: Optional[RoleQueries] = None
        self.badge: Optional[UnreadBadge] = None
        self.tracker: Optional[ReadStateTracker] = None
        self.pipeline: Optional[SendPipeline] = None
        self.conversations: Optional[ConversationListSurface] = None
        self.active: Optional[ConversationSurface] = None
        self.compose = ComposeBox()

    async def start(self) -> None:
        # role strategy is resolved once and reused by every component
        self.queries = await build_queries(self.identity, self._directory)
        self.badge = UnreadBadge(self._store, self.queries)
        self.badge.subscribe(lambda _count: self._changed())
        self.tracker = ReadStateTracker(self._store, self.queries, self.badge)
        self.pipeline = SendPipeline(
            self.identity,
            self.queries,
            self._store,
            self._directory,
            self._notifier,
            max_length=self._settings.MAX_MESSAGE_LENGTH,
        )
        self.conversations = ConversationListSurface(
            self._store,
            self._bus,
            self.queries,
            directory=self._directory,
            poll_interval=self._settings.CONVERSATION_LIST_POLL_SECONDS,
            failure_threshold=self._settings.SYNC_FAILURE_THRESHOLD,
            on_change=self._surface_changed,
            on_unread=self._unread_arrived,
        )
        await self.conversations.mount()
        await self.badge.refresh()
        logger.info("Messaging session started for %s (%s)", self.identity.user_id, self.identity.role)

    async def stop(self) -> None:
        await self.close_conversation()
        if self.conversations is not None:
            await self.conversations.unmount()
        if self.pipeline is not None:
            await self.pipeline.drain()

    async def open_conversation(self, key: Optional[str]) -> ConversationSurface:
        if not key:
            raise ValidationError("No conversation selected")
        if self.active is not None and self.active.key == key:
            return self.active
        await self.close_conversation()
        self.compose = ComposeBox()
        surface = ConversationSurface(
            key,
            self._store,
            self._bus,
            self.queries,
            poll_interval=self._settings.CONVERSATION_POLL_SECONDS,
            failure_threshold=self._settings.SYNC_FAILURE_THRESHOLD,
            on_change=self._surface_changed,
            on_unread=self._unread_arrived,
        )
        self.active = surface
        await surface.mount()
        await self._mark_active_read()
        return surface

    async def close_conversation(self) -> None:
        surface, self.active = self.active, None
        if surface is not None:
            await surface.unmount()

    async def send(self, text: Optional[str] = None, booking_id: Optional[str] = None) -> Message:
        if text is not None:
            self.compose.text = text
        surface = self.active
        key = surface.key if surface is not None else None
        try:
            message = await self.pipeline.send(self.compose, key, booking_id=booking_id)
        finally:
            await self._changed()
        if surface is not None:
            await surface.merge([message])
        await self.conversations.merge([message])
        return message

    async def refresh(self) -> None:
        """Reconciling reload of every mounted surface."""
        await self.conversations.reload()
        if self.active is not None:
            await self.active.reload()
            await self._mark_active_read()
        await self.badge.refresh()

    def snapshot(self) -> Dict[str, Any]:
        active = self.active
        return {
            "type": "snapshot",
            "conversations": [s.model_dump(mode="json") for s in self.conversations.index.ordered()],
            "active": None
            if active is None
            else {"key": active.key, "messages": [m.model_dump(mode="json") for m in active.messages]},
            "badge": self.badge.count,
            "degraded": self.degraded,
            "compose": {"text": self.compose.text, "error": self.compose.error},
        }

    @property
    def degraded(self) -> bool:
        surfaces: List[SyncSurface] = [s for s in (self.conversations, self.active) if s is not None]
        return any(s.degraded for s in surfaces)

    async def _mark_active_read(self, retry: bool = True) -> None:
        surface = self.active
        if surface is None:
            return

        def reload_then_retry() -> None:
            # a failed write is re-issued once the reload has landed
            surface.request_reload(then=lambda: self._retry_read(surface))

        await self.tracker.mark_conversation_read(
            surface.key,
            timeline=surface.timeline,
            index=self.conversations.index,
            on_failure=reload_then_retry if retry else None,
        )

    async def _retry_read(self, surface: ConversationSurface) -> None:
        if self.active is surface:
            await self._mark_active_read(retry=False)

    async def _unread_arrived(self, surface: SyncSurface, messages: List[Message]) -> None:
        active = self.active
        if active is not None and active.alive and any(active.scope.matches(m) for m in messages):
            # the open conversation is on screen, so its new messages are read
            await self._mark_active_read()
        else:
            await self.badge.refresh()

    async def _surface_changed(self, surface: SyncSurface) -> None:
        await self._changed()

    async def _changed(self) -> None:
        if self._on_change is None:
            return
        result = self._on_change(self)
        if inspect.isawaitable(result):
            await result
