import inspect
import logging
from typing import Any, Callable, List, Optional

from marketplace_chat.core.errors import PersistenceError

logger = logging.getLogger(__name__)


class UnreadBadge:
    """Read-through cache of the caller's total unread message count.

    The value is always recomputed from the store, never incremented or
    decremented locally, so every surface showing it agrees.
    """

    def __init__(self, store, queries) -> None:
        self._store = store
        self._queries = queries
        self.count: Optional[int] = None
        self._listeners: List[Callable[[int], Any]] = []

    def subscribe(self, listener: Callable[[int], Any]) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> Optional[int]:
        try:
            count = await self._store.count_unread(self._queries.self_id, self._queries.badge_group_key())
        except PersistenceError as exc:
            logger.warning("Unread badge refresh failed: %s", exc.detail)
            return self.count
        if count != self.count:
            self.count = count
            for listener in list(self._listeners):
                result = listener(count)
                if inspect.isawaitable(result):
                    await result
        return self.count
