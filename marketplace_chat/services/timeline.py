from bisect import bisect_left
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from marketplace_chat.schemas.message import Message


class MessageTimeline:
    """Messages of one conversation, de-duplicated by id and kept in
    ``(created_at, id)`` order whatever the arrival order was.

    ``merge`` is idempotent and commutative, so push events, poll results and
    optimistic local inserts can be applied in any interleaving. Read state
    only moves forward: an id once seen or marked read stays read, even when
    a stale unread copy arrives later or a reload replaces the contents.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._by_id: Dict[str, Message] = {}
        self._keys: List[tuple] = []
        self._items: List[Message] = []
        self._read: Set[str] = set()
        self.merge(messages)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    @property
    def messages(self) -> List[Message]:
        return list(self._items)

    @property
    def ids(self) -> List[str]:
        return [m.id for m in self._items]

    @property
    def watermark(self) -> Optional[datetime]:
        return self._items[-1].created_at if self._items else None

    def merge(self, messages: Iterable[Message]) -> List[Message]:
        """Merge ``messages``; return the ones that were added or became read."""
        changed: List[Message] = []
        for message in messages:
            if message.is_read:
                self._read.add(message.id)
            elif message.id in self._read:
                message = message.as_read()
            current = self._by_id.get(message.id)
            if current is None:
                key = message.sort_key
                pos = bisect_left(self._keys, key)
                self._keys.insert(pos, key)
                self._items.insert(pos, message)
                self._by_id[message.id] = message
                changed.append(message)
            elif message.is_read and not current.is_read:
                self._replace(message)
                changed.append(message)
        return changed

    def reset(self, messages: Iterable[Message]) -> None:
        """Replace contents with a reloaded snapshot.

        Local messages newer than the snapshot (arrived while it was being
        fetched) are kept, and so is local read state.
        """
        snapshot = list(messages)
        newest = max((m.sort_key for m in snapshot), default=None)
        pending = [m for m in self._items if newest is None or m.sort_key > newest]
        self._by_id.clear()
        self._keys.clear()
        self._items.clear()
        self.merge(snapshot)
        self.merge(pending)

    def mark_read_local(self, receiver_id: str) -> List[str]:
        """Flip ``is_read`` on every message addressed to ``receiver_id``."""
        flipped = []
        for message in list(self._items):
            if message.receiver_id == receiver_id and not message.is_read:
                self._read.add(message.id)
                self._replace(message.as_read())
                flipped.append(message.id)
        return flipped

    def unread_for(self, receiver_id: str) -> List[Message]:
        return [m for m in self._items if m.receiver_id == receiver_id and not m.is_read]

    def _replace(self, message: Message) -> None:
        pos = bisect_left(self._keys, message.sort_key)
        self._items[pos] = message
        self._by_id[message.id] = message
