import logging
from typing import Callable, Optional

from marketplace_chat.core.errors import PersistenceError
from marketplace_chat.services.aggregator import ConversationIndex
from marketplace_chat.services.badge import UnreadBadge
from marketplace_chat.services.timeline import MessageTimeline

logger = logging.getLogger(__name__)


class ReadStateTracker:
    """Marks a conversation read when it becomes visible.

    Local state flips first; the store write follows. A failed write is not
    rolled back locally (read state may run ahead of the store) but schedules
    a reconciling reload, which retries the write.
    """

    def __init__(self, store, queries, badge: Optional[UnreadBadge] = None) -> None:
        self._store = store
        self._queries = queries
        self._badge = badge

    async def mark_conversation_read(
        self,
        key: str,
        timeline: Optional[MessageTimeline] = None,
        index: Optional[ConversationIndex] = None,
        on_failure: Optional[Callable[[], None]] = None,
    ) -> int:
        if timeline is not None:
            timeline.mark_read_local(self._queries.self_id)
        if index is not None:
            index.mark_read(key)

        group_key, counterpart_id = self._queries.mark_read_args(key)
        try:
            updated = await self._store.mark_read(self._queries.self_id, group_key, counterpart_id)
        except PersistenceError as exc:
            logger.error("Persisting read state for %s failed: %s", key, exc.detail)
            if on_failure is not None:
                on_failure()
            return 0
        finally:
            if self._badge is not None:
                await self._badge.refresh()
        return updated
