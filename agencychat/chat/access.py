"""
Access control for conversations.

A user may read or write a conversation of their own agency when they are a
participant, or when they hold the agency_admin role. Everything else,
including lookup failures, is denied.
"""
import asyncio
import logging

import aiosqlite

from agencychat.config import BACKEND_TIMEOUT
from agencychat.db import crud
from agencychat.db.models import ADMIN_ROLE

logger = logging.getLogger(__name__)

ACCESS_MODES = {"read", "write"}


class AccessControl:
    def __init__(self, db: aiosqlite.Connection, timeout: float = BACKEND_TIMEOUT) -> None:
        self._db = db
        self._timeout = timeout

    async def can_access(self, user_id: str, conversation_id: str, mode: str = "read") -> bool:
        if mode not in ACCESS_MODES:
            raise ValueError(f"Invalid access mode '{mode}'")
        try:
            return await asyncio.wait_for(self._check(user_id, conversation_id), timeout=self._timeout)
        except Exception as e:
            logger.error(
                f"Access check failed closed: user={user_id} conversation={conversation_id} "
                f"mode={mode}: {type(e).__name__}: {e}"
            )
            return False

    async def _check(self, user_id: str, conversation_id: str) -> bool:
        user = await crud.user_get(self._db, user_id)
        if user is None:
            return False

        conversation = await crud.conversation_get(self._db, conversation_id)
        if conversation is None or conversation.agency_id != user.agency_id:
            return False

        if user_id in conversation.participants:
            return True
        # Agency admins see every conversation of their agency
        return user.role == ADMIN_ROLE
