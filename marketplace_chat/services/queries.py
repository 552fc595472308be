"""Role-dependent query building.

Customers and providers see the same ``messages`` collection through
different filters. Each role gets one strategy object, selected once per
session by :func:`build_queries`; the rest of the core only talks to the
strategy interface.

Every :class:`QueryScope` carries both the Mongo filter and the same
predicate evaluated in Python. The predicate backs the client-side fallback
when the store rejects a compound filter, and decides whether a change-feed
event is relevant to a surface.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from marketplace_chat.core.errors import RouteResolutionError
from marketplace_chat.models.identity import Identity
from marketplace_chat.schemas.message import Message


@dataclass(frozen=True)
class QueryScope:

    filter: Dict[str, Any]
    # coarser filter the store always accepts; predicate narrows it exactly
    group_filter: Dict[str, Any]
    predicate: Callable[[Message], bool]

    def matches(self, message: Message) -> bool:
        return self.predicate(message)


class RoleQueries:

    role: str
    counterpart_type: str

    def __init__(self, identity: Identity) -> None:
        self.identity = identity

    @property
    def self_id(self) -> str:
        return self.identity.user_id

    def counterpart_id(self, message: Message) -> str:
        return message.receiver_id if message.sender_id == self.self_id else message.sender_id

    def conversation_key(self, message: Message) -> str:
        raise NotImplementedError

    def conversation_scope(self, key: str) -> QueryScope:
        raise NotImplementedError

    def inbox_scope(self) -> QueryScope:
        raise NotImplementedError

    def mark_read_args(self, key: str) -> Tuple[str, Optional[str]]:
        """Return ``(group_key, counterpart_id)`` for ``mark_read``."""
        raise NotImplementedError

    def badge_group_key(self) -> Optional[str]:
        return None

    async def resolve_route(self, key: str, directory) -> Tuple[str, str]:
        """Return ``(receiver_id, provider_id)`` for a message sent to ``key``."""
        raise NotImplementedError


class CustomerQueries(RoleQueries):
    """A customer's conversations are keyed by provider id."""

    role = "customer"
    counterpart_type = "provider"

    def conversation_key(self, message: Message) -> str:
        return message.provider_id

    def _is_participant(self, message: Message) -> bool:
        return message.sender_id == self.self_id or message.receiver_id == self.self_id

    def conversation_scope(self, key: str) -> QueryScope:
        me = self.self_id
        return QueryScope(
            filter={"provider_id": key, "$or": [{"sender_id": me}, {"receiver_id": me}]},
            group_filter={"provider_id": key},
            predicate=lambda m: m.provider_id == key and self._is_participant(m),
        )

    def inbox_scope(self) -> QueryScope:
        me = self.self_id
        return QueryScope(
            filter={"$or": [{"sender_id": me}, {"receiver_id": me}]},
            group_filter={"$or": [{"sender_id": me}, {"receiver_id": me}]},
            predicate=self._is_participant,
        )

    def mark_read_args(self, key: str) -> Tuple[str, Optional[str]]:
        return key, None

    async def resolve_route(self, key: str, directory) -> Tuple[str, str]:
        owner = await directory.get_provider_owner(key)
        if not owner:
            raise RouteResolutionError(f"Recipient not found for provider {key}")
        return owner, key


class ProviderQueries(RoleQueries):
    """A provider's conversations all share its own provider id; keyed by customer."""

    role = "provider"
    counterpart_type = "customer"

    def __init__(self, identity: Identity, provider_id: str) -> None:
        super().__init__(identity)
        self.provider_id = provider_id

    def conversation_key(self, message: Message) -> str:
        return self.counterpart_id(message)

    def conversation_scope(self, key: str) -> QueryScope:
        own = self.provider_id
        return QueryScope(
            filter={"provider_id": own, "$or": [{"sender_id": key}, {"receiver_id": key}]},
            group_filter={"provider_id": own},
            predicate=lambda m: m.provider_id == own and (m.sender_id == key or m.receiver_id == key),
        )

    def inbox_scope(self) -> QueryScope:
        own = self.provider_id
        return QueryScope(
            filter={"provider_id": own},
            group_filter={"provider_id": own},
            predicate=lambda m: m.provider_id == own,
        )

    def mark_read_args(self, key: str) -> Tuple[str, Optional[str]]:
        return self.provider_id, key

    def badge_group_key(self) -> Optional[str]:
        return self.provider_id

    async def resolve_route(self, key: str, directory) -> Tuple[str, str]:
        if not key:
            raise RouteResolutionError("Recipient not found")
        return key, self.provider_id


async def build_queries(identity: Identity, directory) -> RoleQueries:
    if identity.role == "customer":
        return CustomerQueries(identity)
    provider = await directory.get_provider_by_user(identity.user_id)
    if not provider:
        raise RouteResolutionError(f"No provider profile for user {identity.user_id}")
    return ProviderQueries(identity, str(provider["_id"]))
