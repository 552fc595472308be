"""Conversation list projection.

A conversation is not stored anywhere: it is folded out of the flat message
collection, one summary per conversation key. The projection can be thrown
away and rebuilt at any time.
"""

from typing import Dict, Iterable, List, Set

from marketplace_chat.schemas.conversation import ConversationSummary, CounterpartProfile
from marketplace_chat.schemas.message import Message


class ConversationIndex:
    """Ordered conversation summaries for one caller.

    Unread counts are tracked as sets of message ids, so folding the same
    message twice never counts it twice, and a message once seen as read is
    never counted unread again.
    """

    def __init__(self, queries) -> None:
        self._queries = queries
        self._summaries: Dict[str, ConversationSummary] = {}
        # most recently touched first
        self._order: List[str] = []
        self._unread: Dict[str, Set[str]] = {}
        self._read: Set[str] = set()
        self._profiles: Dict[str, CounterpartProfile] = {}

    @property
    def self_id(self) -> str:
        return self._queries.self_id

    def __contains__(self, key: str) -> bool:
        return key in self._summaries

    def __len__(self) -> int:
        return len(self._summaries)

    def get(self, key: str) -> ConversationSummary:
        return self._summaries[key]

    def as_dict(self) -> Dict[str, ConversationSummary]:
        return dict(self._summaries)

    def rebuild(self, messages: Iterable[Message]) -> None:
        """Recompute every summary from a full batch of messages."""
        self._summaries.clear()
        self._order.clear()
        self._unread.clear()
        for message in messages:
            self._fold(message)
        self._order.sort(key=lambda k: self._summaries[k].last_message_at, reverse=True)

    def apply(self, message: Message) -> bool:
        """Targeted update for a single message from push, poll or send.

        Returns True when the visible state changed.
        """
        before = self._summaries.get(self._queries.conversation_key(message))
        key = self._fold(message)
        after = self._summaries[key]
        if after != before and (before is None or after.last_message_id != before.last_message_id):
            self._order.remove(key)
            self._order.insert(0, key)
        return after != before

    def mark_read(self, key: str) -> None:
        """Optimistically zero a conversation's unread count."""
        unread = self._unread.get(key)
        if not unread:
            return
        self._read.update(unread)
        unread.clear()
        self._summaries[key] = self._summaries[key].model_copy(update={"unread_count": 0})

    def ordered(self) -> List[ConversationSummary]:
        """Summaries newest first; equal timestamps keep move-to-front order."""
        rank = {key: i for i, key in enumerate(self._order)}
        return sorted(
            self._summaries.values(),
            key=lambda s: (-s.last_message_at.timestamp(), rank[s.key]),
        )

    def describe(self, key: str, profile: CounterpartProfile) -> bool:
        """Attach counterpart display data; kept across rebuilds."""
        self._profiles[key] = profile
        summary = self._summaries.get(key)
        if summary is None:
            return False
        updated = summary.model_copy(update=self._profile_fields(key))
        self._summaries[key] = updated
        return updated != summary

    def undescribed(self) -> List[ConversationSummary]:
        return [s for key, s in self._summaries.items() if key not in self._profiles]

    def _profile_fields(self, key: str) -> dict:
        profile = self._profiles.get(key)
        if profile is None:
            return {}
        return {
            "counterpart_name": profile.name,
            "counterpart_avatar_url": profile.avatar_url,
            "service_type": profile.service_type,
        }

    def total_unread(self) -> int:
        return sum(len(ids) for ids in self._unread.values())

    def _fold(self, message: Message) -> str:
        queries = self._queries
        key = queries.conversation_key(message)
        unread = self._unread.setdefault(key, set())
        if message.is_read:
            self._read.add(message.id)
            unread.discard(message.id)
        elif message.receiver_id == self.self_id and message.id not in self._read:
            unread.add(message.id)

        summary = self._summaries.get(key)
        if summary is None:
            summary = ConversationSummary(
                key=key,
                counterpart_id=queries.counterpart_id(message),
                counterpart_type=queries.counterpart_type,
                provider_ref=message.provider_id,
                last_message=message.content,
                last_message_at=message.created_at,
                last_message_id=message.id,
                unread_count=len(unread),
                **self._profile_fields(key),
            )
            self._order.insert(0, key)
        else:
            update = {"unread_count": len(unread)}
            if message.sort_key > (summary.last_message_at, summary.last_message_id):
                update.update(
                    last_message=message.content,
                    last_message_at=message.created_at,
                    last_message_id=message.id,
                )
            summary = summary.model_copy(update=update)
        self._summaries[key] = summary
        return key


def aggregate_conversations(messages: Iterable[Message], queries) -> Dict[str, ConversationSummary]:
    """Fold a batch of the caller's messages into summaries keyed by conversation."""
    index = ConversationIndex(queries)
    index.rebuild(messages)
    return index.as_dict()


def order_conversations(summaries: Iterable[ConversationSummary]) -> List[ConversationSummary]:
    return sorted(summaries, key=lambda s: s.last_message_at, reverse=True)


async def describe_conversations(index: ConversationIndex, directory) -> bool:
    """Fill counterpart names and avatars for summaries that have none yet.

    Raises PersistenceError when the directory is unreachable.
    """
    changed = False
    for summary in index.undescribed():
        profile = await directory.describe_counterpart(summary)
        changed = index.describe(summary.key, profile) or changed
    return changed
