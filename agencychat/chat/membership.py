"""
Live conversation membership and fan-out.

`ConversationMembership` tracks which users are currently joined to (viewing)
each conversation. It is distinct from a conversation's durable participant
list and is empty after a restart, so clients must re-join.

`Publisher` is the seam the message router pushes through. The in-memory
implementation delivers to joined users connected to this process; a
multi-instance deployment would provide a message-bus backed one.
"""
import logging
from typing import Any, Iterable, Optional, Protocol

from agencychat.chat.registry import ConnectionRegistry
from agencychat.chat.transport import safe_send

logger = logging.getLogger(__name__)


class ConversationMembership:
    def __init__(self) -> None:
        self._joined: dict[str, set[str]] = {}

    def join(self, user_id: str, conversation_id: str) -> None:
        self._joined.setdefault(conversation_id, set()).add(user_id)

    def leave(self, user_id: str, conversation_id: str) -> None:
        members = self._joined.get(conversation_id)
        if members is None:
            return
        members.discard(user_id)
        if not members:
            del self._joined[conversation_id]

    def drop_user(self, user_id: str) -> list[str]:
        """Remove the user from every conversation; returns the conversations left."""
        left = [cid for cid, members in self._joined.items() if user_id in members]
        for cid in left:
            self.leave(user_id, cid)
        return left

    def members(self, conversation_id: str) -> set[str]:
        return set(self._joined.get(conversation_id, ()))

    def is_joined(self, user_id: str, conversation_id: str) -> bool:
        return user_id in self._joined.get(conversation_id, ())

    def conversations_for(self, user_id: str) -> list[str]:
        return [cid for cid, members in self._joined.items() if user_id in members]


class Publisher(Protocol):
    async def publish(
        self,
        conversation_id: str,
        envelope: dict[str, Any],
        exclude: Optional[Iterable[str]] = None,
    ) -> int: ...


class InMemoryPublisher:
    """Single-process fan-out to joined users with an open transport."""

    def __init__(self, registry: ConnectionRegistry, membership: ConversationMembership) -> None:
        self._registry = registry
        self._membership = membership

    async def publish(
        self,
        conversation_id: str,
        envelope: dict[str, Any],
        exclude: Optional[Iterable[str]] = None,
    ) -> int:
        skip = set(exclude or ())
        delivered = 0
        # members() returns a copy, so joins/leaves during a push do not disturb the loop
        for user_id in sorted(self._membership.members(conversation_id)):
            if user_id in skip:
                continue
            transport = self._registry.get(user_id)
            if transport is None:
                continue
            if await safe_send(transport, envelope):
                delivered += 1
        logger.debug(f"{envelope.get('type')} for {conversation_id} pushed to {delivered} connection(s)")
        return delivered
