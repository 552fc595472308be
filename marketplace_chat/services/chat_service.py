from datetime import datetime
from typing import List, Optional

from marketplace_chat.core.config import Settings
from marketplace_chat.models.identity import Identity
from marketplace_chat.repositories.directory_repository import DirectoryRepository
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.schemas.conversation import ConversationList, ConversationSummary, UnreadCount
from marketplace_chat.schemas.message import Message
from marketplace_chat.services.aggregator import ConversationIndex, describe_conversations
from marketplace_chat.services.queries import RoleQueries, build_queries
from marketplace_chat.services.send_pipeline import ComposeBox, SendPipeline
from marketplace_chat.utils.notifications import Notifier


class ChatService:
    """Request-scoped messaging operations behind the HTTP API."""

    def __init__(
        self,
        message_repo: MessageRepository,
        directory: DirectoryRepository,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self._message_repo = message_repo
        self._directory = directory
        self._notifier = notifier
        self._settings = settings

    async def queries_for(self, identity: Identity) -> RoleQueries:
        return await build_queries(identity, self._directory)

    async def list_conversations(self, identity: Identity) -> ConversationList:
        queries = await self.queries_for(identity)
        messages = await self._message_repo.fetch_conversation(queries.inbox_scope())
        index = await self._build_index(queries, messages)
        return ConversationList(items=index.ordered(), unread_total=index.total_unread())

    async def get_messages(self, identity: Identity, key: str, since: Optional[datetime] = None) -> List[Message]:
        queries = await self.queries_for(identity)
        return await self._message_repo.fetch_since(queries.conversation_scope(key), since)

    async def send_message(self, identity: Identity, key: str, content: str, booking_id: Optional[str] = None) -> Message:
        queries = await self.queries_for(identity)
        pipeline = SendPipeline(
            identity,
            queries,
            self._message_repo,
            self._directory,
            self._notifier,
            max_length=self._settings.MAX_MESSAGE_LENGTH,
        )
        message = await pipeline.send(ComposeBox(text=content), key, booking_id=booking_id)
        # request scope ends here; let the notification finish
        await pipeline.drain()
        return message

    async def mark_read(self, identity: Identity, key: str) -> int:
        queries = await self.queries_for(identity)
        group_key, counterpart_id = queries.mark_read_args(key)
        return await self._message_repo.mark_read(identity.user_id, group_key, counterpart_id)

    async def unread_count(self, identity: Identity) -> UnreadCount:
        queries = await self.queries_for(identity)
        count = await self._message_repo.count_unread(identity.user_id, queries.badge_group_key())
        return UnreadCount(unread=count, provider_id=queries.badge_group_key())

    async def summary_for(self, identity: Identity, key: str) -> Optional[ConversationSummary]:
        queries = await self.queries_for(identity)
        messages = await self._message_repo.fetch_conversation(queries.conversation_scope(key))
        index = await self._build_index(queries, messages)
        return index.get(key) if key in index else None

    async def _build_index(self, queries: RoleQueries, messages: List[Message]) -> ConversationIndex:
        index = ConversationIndex(queries)
        index.rebuild(messages)
        await describe_conversations(index, self._directory)
        return index
