"""Keeps the conversation list and the open conversation fresh.

Each surface runs two redundant channels: a subscription to the caller's
change feed for latency, and a fixed-interval ``fetch_since(watermark)`` poll
as the correctness backstop. Neither is authoritative on its own; both feed
the same id-keyed merge, so a message delivered by both shows up once.

States::

    IDLE -> SUBSCRIBED -> (POLLING <-> RECEIVING) -> CLOSED

After ``unmount`` every pending callback is a no-op: each one re-checks
liveness after its awaits before touching state.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set

from pydantic import ValidationError as PayloadError

from marketplace_chat.core.errors import PersistenceError, SyncTransientError
from marketplace_chat.schemas.message import ChangeEvent, Message, utc_now_ms
from marketplace_chat.services.aggregator import ConversationIndex, describe_conversations
from marketplace_chat.services.queries import QueryScope, RoleQueries
from marketplace_chat.services.timeline import MessageTimeline
from marketplace_chat.utils.realtime_bus import user_channel

logger = logging.getLogger(__name__)

ChangeListener = Callable[["SyncSurface"], Any]
UnreadListener = Callable[["SyncSurface", List[Message]], Awaitable[None]]


class SurfaceState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    POLLING = "polling"
    RECEIVING = "receiving"
    CLOSED = "closed"


class SyncSurface:

    def __init__(
        self,
        store,
        bus,
        queries: RoleQueries,
        *,
        poll_interval: float,
        failure_threshold: int = 3,
        on_change: Optional[ChangeListener] = None,
        on_unread: Optional[UnreadListener] = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._queries = queries
        self.poll_interval = poll_interval
        self.failure_threshold = failure_threshold
        self._on_change = on_change
        self._on_unread = on_unread

        self.state = SurfaceState.IDLE
        self.watermark: Optional[datetime] = None
        self.consecutive_failures = 0
        self.degraded = False

        self._alive = False
        self._subscription = None
        self._sub_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def scope(self) -> QueryScope:
        raise NotImplementedError

    @property
    def alive(self) -> bool:
        return self._alive

    async def mount(self) -> None:
        if self.state is not SurfaceState.IDLE:
            raise RuntimeError(f"surface already {self.state.value}")
        self._alive = True
        self._subscription = await self._bus.subscribe(user_channel(self._queries.self_id), self.handle_event)
        self._sub_task = asyncio.create_task(self._subscription.run())
        self.state = SurfaceState.SUBSCRIBED

        started = utc_now_ms()
        try:
            await self.reload()
        except PersistenceError as exc:
            # watermark stays unset so the first poll fetches the whole scope
            self._record_failure(exc)
        else:
            if self.watermark is None:
                # inserts in the same millisecond as the load must still be polled
                self.watermark = started - timedelta(milliseconds=1)
        if self._alive:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def unmount(self) -> None:
        if self.state is SurfaceState.CLOSED:
            return
        self._alive = False
        self.state = SurfaceState.CLOSED
        if self._subscription is not None:
            await self._subscription.cancel()
        current = asyncio.current_task()
        tasks = [t for t in (self._poll_task, self._sub_task, *self._tasks) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _poll_loop(self) -> None:
        while self._alive:
            await asyncio.sleep(self.poll_interval)
            if not self._alive:
                return
            await self.poll_once()

    async def poll_once(self) -> List[Message]:
        """One poll tick; failures are counted, logged and swallowed."""
        if not self._alive:
            return []
        self.state = SurfaceState.POLLING
        try:
            messages = await self._store.fetch_since(self.scope, self.watermark)
        except PersistenceError as exc:
            self._record_failure(exc)
            return []
        if not self._alive:
            return []
        await self._record_success()
        return await self.merge(messages)

    async def handle_event(self, raw: str) -> None:
        """Change-feed callback; only records inside this surface's scope apply."""
        if not self._alive:
            return
        try:
            event = ChangeEvent.model_validate_json(raw)
        except PayloadError:
            logger.warning("Dropping malformed change event: %.200s", raw)
            return
        if not self.scope.matches(event.record):
            return
        self.state = SurfaceState.RECEIVING
        await self.merge([event.record])

    async def merge(self, messages: List[Message]) -> List[Message]:
        """Id-keyed merge shared by push, poll and optimistic local inserts."""
        if not messages or not self._alive:
            return []
        changed = self._apply(messages)
        newest = max(m.created_at for m in messages)
        if self.watermark is None or newest > self.watermark:
            self.watermark = newest
        if changed:
            unread = [m for m in changed if m.receiver_id == self._queries.self_id and not m.is_read]
            if unread and self._on_unread is not None:
                await self._on_unread(self, unread)
            await self._notify()
        return changed

    async def reload(self) -> None:
        """Reconciling reload: refetch the whole scope, superseding local guesses."""
        messages = await self._store.fetch_conversation(self.scope)
        if not self._alive:
            return
        self._replace(messages)
        self.watermark = self._local_watermark()
        await self._notify()

    def request_reload(self, then: Optional[Callable[[], Awaitable[None]]] = None) -> None:
        """Schedule a reconciling reload; ``then`` runs after it succeeds."""
        if self._alive:
            self._spawn(self._reload_quietly(then))

    async def _reload_quietly(self, then: Optional[Callable[[], Awaitable[None]]] = None) -> None:
        try:
            await self.reload()
        except PersistenceError as exc:
            self._record_failure(exc)
            return
        if then is not None and self._alive:
            await then()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        error = SyncTransientError(str(exc))
        logger.warning(
            "%s sync tick failed (%d consecutive): %s",
            type(self).__name__,
            self.consecutive_failures,
            error.detail,
        )
        if self.consecutive_failures >= self.failure_threshold and not self.degraded:
            self.degraded = True
            logger.error("%s connection degraded after %d failed ticks", type(self).__name__, self.consecutive_failures)
            if self._alive:
                self._spawn(self._notify())

    async def _record_success(self) -> None:
        self.consecutive_failures = 0
        if self.degraded:
            self.degraded = False
            logger.info("%s connection recovered", type(self).__name__)
            await self._notify()

    async def _notify(self) -> None:
        if self._on_change is None or not self._alive:
            return
        try:
            result = self._on_change(self)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("%s change listener failed", type(self).__name__)

    def _apply(self, messages: List[Message]) -> List[Message]:
        raise NotImplementedError

    def _replace(self, messages: List[Message]) -> None:
        raise NotImplementedError

    def _local_watermark(self) -> Optional[datetime]:
        raise NotImplementedError


class ConversationSurface(SyncSurface):
    """The open conversation with one counterpart."""

    def __init__(self, key: str, store, bus, queries: RoleQueries, **kwargs) -> None:
        super().__init__(store, bus, queries, **kwargs)
        self.key = key
        self.timeline = MessageTimeline()
        self._scope = queries.conversation_scope(key)

    @property
    def scope(self) -> QueryScope:
        return self._scope

    @property
    def messages(self) -> List[Message]:
        return self.timeline.messages

    def _apply(self, messages: List[Message]) -> List[Message]:
        return self.timeline.merge(messages)

    def _replace(self, messages: List[Message]) -> None:
        self.timeline.reset(messages)

    def _local_watermark(self) -> Optional[datetime]:
        return self.timeline.watermark


class ConversationListSurface(SyncSurface):
    """Every conversation of the caller, newest first.

    With a ``directory`` each conversation also carries the counterpart's
    display name and avatar, looked up once per key.
    """

    def __init__(self, store, bus, queries: RoleQueries, directory=None, **kwargs) -> None:
        super().__init__(store, bus, queries, **kwargs)
        self.index = ConversationIndex(queries)
        self._scope = queries.inbox_scope()
        self._directory = directory

    @property
    def scope(self) -> QueryScope:
        return self._scope

    async def reload(self) -> None:
        await super().reload()
        await self._describe()

    async def merge(self, messages: List[Message]) -> List[Message]:
        changed = await super().merge(messages)
        if changed:
            await self._describe()
        return changed

    async def _describe(self) -> None:
        if self._directory is None or not self._alive:
            return
        try:
            changed = await describe_conversations(self.index, self._directory)
        except PersistenceError as exc:
            # retried on the next merge or reload
            logger.warning("Counterpart lookup failed: %s", exc.detail)
            return
        if changed:
            await self._notify()

    def _apply(self, messages: List[Message]) -> List[Message]:
        return [m for m in messages if self.index.apply(m)]

    def _replace(self, messages: List[Message]) -> None:
        self.index.rebuild(messages)

    def _local_watermark(self) -> Optional[datetime]:
        return max((s.last_message_at for s in self.index.ordered()), default=None)
