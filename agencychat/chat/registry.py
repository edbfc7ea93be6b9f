"""
Connection registry: live sessions of currently connected users.

One session per user id; a second registration for the same user replaces the
first (last write wins). The replaced transport is left open and simply stops
receiving pushes.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from agencychat.chat.presence import PresenceBroadcaster
from agencychat.chat.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    user_id: str
    agency_id: str
    role: str
    transport: Transport
    last_seen: datetime


class ConnectionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}
        self.presence = PresenceBroadcaster(self)

    async def register(self, user_id: str, agency_id: str, role: str, transport: Transport) -> ChatSession:
        previous = self._sessions.get(user_id)
        session = ChatSession(
            user_id=user_id, agency_id=agency_id, role=role,
            transport=transport, last_seen=datetime.now(timezone.utc),
        )
        self._sessions[user_id] = session
        if previous is not None and previous.transport is not transport:
            logger.warning(f"User {user_id} registered a second connection; previous one replaced")
        logger.info(f"User connected: {user_id} agency={agency_id} role={role}")
        await self.presence.broadcast(user_id, agency_id, "online")
        return session

    async def unregister(self, user_id: str, transport: Optional[Transport] = None) -> bool:
        """Drop the user's session. With `transport`, only if it is still the registered one."""
        session = self._sessions.get(user_id)
        if session is None:
            return False
        if transport is not None and session.transport is not transport:
            logger.debug(f"Ignoring disconnect of replaced connection for {user_id}")
            return False
        del self._sessions[user_id]
        logger.info(f"User disconnected: {user_id}")
        await self.presence.broadcast(user_id, session.agency_id, "offline")
        return True

    def get(self, user_id: str) -> Optional[Transport]:
        session = self._sessions.get(user_id)
        return session.transport if session else None

    def session(self, user_id: str) -> Optional[ChatSession]:
        return self._sessions.get(user_id)

    def touch(self, user_id: str) -> None:
        session = self._sessions.get(user_id)
        if session is not None:
            session.last_seen = datetime.now(timezone.utc)

    def sessions_for_agency(self, agency_id: str) -> list[ChatSession]:
        return [s for s in self._sessions.values() if s.agency_id == agency_id]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
