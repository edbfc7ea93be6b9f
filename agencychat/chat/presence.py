"""
Presence broadcaster: tells same-agency peers when a user goes online/offline.
"""
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from agencychat.chat.transport import safe_send

if TYPE_CHECKING:
    from agencychat.chat.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    def __init__(self, registry: "ConnectionRegistry") -> None:
        self._registry = registry

    async def broadcast(self, user_id: str, agency_id: str, status: str) -> int:
        """Push a chat:presence event to every other connection in the agency.

        Returns the number of connections that accepted the push.
        """
        envelope = {
            "type": "chat:presence",
            "data": {
                "userId": user_id,
                "status": status,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        delivered = 0
        # Snapshot: a push may suspend while other handlers mutate the registry.
        for session in list(self._registry.sessions_for_agency(agency_id)):
            if session.user_id == user_id:
                continue
            if await safe_send(session.transport, envelope):
                delivered += 1
        logger.debug(f"Presence {status} for {user_id} delivered to {delivered} peer(s)")
        return delivered
