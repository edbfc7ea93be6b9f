"""
Chat service: one shared instance of every chat component, wired together.

The FastAPI app builds a single ChatService at startup and hands it to each
WebSocket connection; tests build isolated instances on an in-memory DB.
"""
import asyncio
import logging
from typing import Optional

import aiosqlite

from agencychat.chat import texts
from agencychat.chat.access import AccessControl
from agencychat.chat.llm import LLMBackend
from agencychat.chat.membership import ConversationMembership, InMemoryPublisher, Publisher
from agencychat.chat.rate_limit import RateLimiter
from agencychat.chat.registry import ConnectionRegistry, ChatSession
from agencychat.chat.responders import AIAssistant, SupportBot
from agencychat.chat.router import MessageRouter, RouteResult, RouteStatus
from agencychat.chat.transport import Transport
from agencychat.config import BACKEND_TIMEOUT, HISTORY_LIMIT
from agencychat.db import crud
from agencychat.db.models import ADMIN_ROLE

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        db: aiosqlite.Connection,
        backend: Optional[LLMBackend] = None,
        limiter: Optional[RateLimiter] = None,
        publisher: Optional[Publisher] = None,
        timeout: float = BACKEND_TIMEOUT,
    ) -> None:
        self.db = db
        self.timeout = timeout
        self.registry = ConnectionRegistry()
        self.membership = ConversationMembership()
        self.limiter = limiter if limiter is not None else RateLimiter()
        self.access = AccessControl(db, timeout=timeout)
        self.publisher = publisher if publisher is not None else InMemoryPublisher(self.registry, self.membership)
        self.router = MessageRouter(db, self.access, self.limiter, self.publisher, timeout=timeout)
        self.assistant = AIAssistant(db, backend, backend_timeout=timeout)
        self.bot = SupportBot(db, timeout=timeout)

    # ─────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────

    async def connect(self, user_id: str, agency_id: str, role: str, transport: Transport) -> ChatSession:
        return await self.registry.register(user_id, agency_id, role, transport)

    async def disconnect(self, user_id: str, transport: Optional[Transport] = None) -> None:
        if await self.registry.unregister(user_id, transport):
            left = self.membership.drop_user(user_id)
            if left:
                logger.debug(f"{user_id} left {len(left)} conversation(s) on disconnect")

    # ─────────────────────────────────────────────
    # Membership
    # ─────────────────────────────────────────────

    async def join(self, user_id: str, agency_id: str, conversation_id: str,
                   limit: int = HISTORY_LIMIT) -> RouteResult:
        """Check read access, start live delivery and return recent history."""
        result = await self.router.history(conversation_id, user_id, limit=limit)
        if not result.ok:
            return result
        self.membership.join(user_id, conversation_id)
        await self._audit(agency_id, user_id, "join", conversation_id)
        return result

    async def leave(self, user_id: str, agency_id: str, conversation_id: str) -> None:
        if not self.membership.is_joined(user_id, conversation_id):
            return
        self.membership.leave(user_id, conversation_id)
        await self._audit(agency_id, user_id, "leave", conversation_id)

    async def typing(self, user_id: str, conversation_id: str, is_typing: bool = True) -> int:
        """Ephemeral indicator for the other joined users; never persisted."""
        if not self.membership.is_joined(user_id, conversation_id):
            return 0
        return await self.publisher.publish(conversation_id, {
            "type": "chat:typing",
            "data": {"conversationId": conversation_id, "userId": user_id, "isTyping": is_typing},
        }, exclude=[user_id])

    # ─────────────────────────────────────────────
    # Automated responders
    # ─────────────────────────────────────────────

    async def ask_assistant(self, user_id: str, agency_id: str, conversation_id: str,
                            question: str) -> Optional[RouteResult]:
        """Run the AI assistant for an agency admin. None means the agency has it switched off."""
        try:
            user = await asyncio.wait_for(crud.user_get(self.db, user_id), timeout=self.timeout)
        except Exception:
            logger.exception(f"AI assistant role lookup failed: user={user_id}")
            return RouteResult(status=RouteStatus.FAILED, error=texts.AI_ERROR)
        if user is None or user.role != ADMIN_ROLE:
            return RouteResult(status=RouteStatus.DENIED, error=texts.AI_ADMIN_ONLY)
        if not await self.access.can_access(user_id, conversation_id, "write"):
            return RouteResult(status=RouteStatus.DENIED, error=texts.NO_WRITE_PERMISSION)

        reply = await self.assistant.respond(conversation_id, question, agency_id)
        if reply is None:
            return None
        metadata = {"processingTime": reply.processing_time}
        if reply.model:
            metadata["aiModel"] = reply.model
        return await self.router.post_system_message(conversation_id, reply.content, "ai_response", metadata)

    async def ask_support_bot(self, user_id: str, agency_id: str, conversation_id: str,
                              message: str) -> RouteResult:
        if not await self.access.can_access(user_id, conversation_id, "write"):
            return RouteResult(status=RouteStatus.DENIED, error=texts.NO_WRITE_PERMISSION)
        reply = await self.bot.reply(message, agency_id)
        return await self.router.post_system_message(conversation_id, reply.content, "bot",
                                                     {"botName": reply.bot_name})

    # ─────────────────────────────────────────────
    # Housekeeping
    # ─────────────────────────────────────────────

    async def run_rate_limit_sweeper(self, interval: float) -> None:
        """Periodically drop expired rate-limit counters. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            dropped = self.limiter.sweep()
            if dropped:
                logger.info(f"Rate-limit sweep dropped {dropped} counter(s)")

    async def _audit(self, agency_id: str, user_id: str, action: str, conversation_id: str) -> None:
        try:
            await asyncio.wait_for(
                crud.audit_create(self.db, agency_id, user_id, action, conversation_id=conversation_id),
                timeout=self.timeout,
            )
        except Exception as e:
            logger.error(f"Audit '{action}' failed: user={user_id} conversation={conversation_id}: {type(e).__name__}: {e}")
