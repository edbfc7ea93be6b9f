"""
Message router: the send / edit / delete / read pipeline of the chat core.

Every public operation returns a RouteResult and never raises. Rejections are
raised internally as RouteError subclasses at the failing check and converted
at the operation boundary; storage errors and deadline expiry become the
FAILED status.

Send order: type -> access (write) -> conversation active -> rate limit ->
persist -> conversation timestamps -> fan-out -> audit. Once the message is
persisted the send reports OK even if a later step fails.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

import aiosqlite

from agencychat.chat import texts
from agencychat.chat.access import AccessControl
from agencychat.chat.membership import Publisher
from agencychat.chat.rate_limit import RateLimiter
from agencychat.config import BACKEND_TIMEOUT
from agencychat.db import crud
from agencychat.db.models import Message, MESSAGE_TYPES, ADMIN_ROLE

logger = logging.getLogger(__name__)

# Types a human may author
USER_MESSAGE_TYPES = {"text", "file"}
# Types only the core itself posts, through post_system_message
SYSTEM_MESSAGE_TYPES = MESSAGE_TYPES - USER_MESSAGE_TYPES

T = TypeVar("T")


class RouteStatus(str, Enum):
    OK = "ok"
    DENIED = "denied"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    FAILED = "failed"


@dataclass
class RouteResult:
    status: RouteStatus
    message: Optional[Message] = None
    messages: list[Message] = field(default_factory=list)
    error: Optional[str] = None          # user-facing text
    retry_after: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is RouteStatus.OK

    def error_envelope(self) -> dict[str, Any]:
        data: dict[str, Any] = {"message": self.error or texts.SEND_FAILED, "reason": self.status.value}
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        return {"type": "error", "data": data}


class RouteError(Exception):
    status = RouteStatus.FAILED

    def __init__(self, user_message: str) -> None:
        self.user_message = user_message
        super().__init__(user_message)

    def to_result(self) -> RouteResult:
        return RouteResult(status=self.status, error=self.user_message)


class AccessDenied(RouteError):
    status = RouteStatus.DENIED


class MessageNotFound(RouteError):
    status = RouteStatus.NOT_FOUND


class InvalidOperation(RouteError):
    status = RouteStatus.INVALID


class RateLimitExceeded(RouteError):
    """Raised when a user exceeds the message or file rate limit."""
    status = RouteStatus.RATE_LIMITED

    def __init__(self, limit: int, window: int, retry_after: int, scope: str) -> None:
        self.limit = limit
        self.window = window
        self.retry_after = retry_after
        self.scope = scope
        super().__init__(texts.RATE_LIMITED)

    def __str__(self) -> str:
        return f"Rate limit exceeded: {self.limit} {self.scope}s/{self.window}s"

    def to_result(self) -> RouteResult:
        return RouteResult(status=self.status, error=self.user_message, retry_after=self.retry_after)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_content(content: str) -> None:
    if not isinstance(content, str) or not content.strip():
        raise InvalidOperation(texts.EMPTY_MESSAGE)


class MessageRouter:
    def __init__(
        self,
        db: aiosqlite.Connection,
        access: AccessControl,
        limiter: RateLimiter,
        publisher: Publisher,
        timeout: float = BACKEND_TIMEOUT,
    ) -> None:
        self.db = db
        self.access = access
        self.limiter = limiter
        self.publisher = publisher
        self.timeout = timeout

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def _run(self, action: str, user_id: Optional[str], ref: str, op: Awaitable[RouteResult]) -> RouteResult:
        try:
            return await op
        except RateLimitExceeded as e:
            logger.info(f"{action} rate limited: user={user_id} {ref} ({e})")
            return e.to_result()
        except RouteError as e:
            logger.warning(f"{action} rejected ({e.status.value}): user={user_id} {ref}")
            return e.to_result()
        except asyncio.TimeoutError:
            logger.error(f"{action} timed out after {self.timeout}s: user={user_id} {ref}")
            return RouteResult(status=RouteStatus.FAILED, error=texts.SEND_FAILED)
        except Exception:
            logger.exception(f"Error during {action}: user={user_id} {ref}")
            return RouteResult(status=RouteStatus.FAILED, error=texts.SEND_FAILED)

    # ─────────────────────────────────────────────
    # Send
    # ─────────────────────────────────────────────

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: str = "text",
        metadata: Optional[dict] = None,
    ) -> RouteResult:
        """Send on behalf of a human user. Always runs the access, type and rate checks."""
        return await self._run(
            "send", sender_id, f"conversation={conversation_id}",
            self._send(conversation_id, sender_id, content, type, metadata),
        )

    async def post_system_message(
        self,
        conversation_id: str,
        content: str,
        type: str,
        metadata: Optional[dict] = None,
    ) -> RouteResult:
        """Post a message authored by the core itself (assistant, support bot).

        Only reachable from in-process callers; the WebSocket gateway never calls it.
        """
        return await self._run(
            "system send", None, f"conversation={conversation_id}",
            self._post_system(conversation_id, content, type, metadata),
        )

    async def _send(self, conversation_id: str, sender_id: str, content: str, type: str,
                    metadata: Optional[dict]) -> RouteResult:
        if not isinstance(type, str) or type not in USER_MESSAGE_TYPES:
            raise InvalidOperation(texts.UNSUPPORTED_TYPE)
        _check_content(content)

        if not await self.access.can_access(sender_id, conversation_id, "write"):
            raise AccessDenied(texts.NO_WRITE_PERMISSION)

        conversation = await self._writable_conversation(conversation_id)
        if type == "file" and not conversation.settings.allow_file_uploads:
            raise AccessDenied(texts.FILE_UPLOADS_DISABLED)

        action = "file" if type == "file" else "message"
        limit = await self._agency_limit(conversation.agency_id, action)
        if not self.limiter.allow(sender_id, action, limit):
            raise RateLimitExceeded(
                limit=limit if limit is not None else self.limiter.limits[action],
                window=int(self.limiter.window_seconds),
                retry_after=self.limiter.retry_after(sender_id, action),
                scope=action,
            )

        # The sender has read their own message
        return await self._deliver(conversation, sender_id, content, type, metadata,
                                   read_by={sender_id: _now().isoformat()})

    async def _post_system(self, conversation_id: str, content: str, type: str,
                           metadata: Optional[dict]) -> RouteResult:
        if type not in SYSTEM_MESSAGE_TYPES:
            raise InvalidOperation(texts.UNSUPPORTED_TYPE)
        _check_content(content)
        conversation = await self._writable_conversation(conversation_id)
        return await self._deliver(conversation, None, content, type, metadata, read_by={})

    async def _writable_conversation(self, conversation_id: str):
        conversation = await self._call(crud.conversation_get(self.db, conversation_id))
        if conversation is None:
            raise MessageNotFound(texts.NO_WRITE_PERMISSION)
        if not conversation.is_active:
            raise InvalidOperation(texts.CONVERSATION_CLOSED)
        return conversation

    async def _deliver(self, conversation, sender_id: Optional[str], content: str, type: str,
                       metadata: Optional[dict], read_by: dict[str, str]) -> RouteResult:
        message = await self._call(crud.msg_create(
            self.db, conversation.id, sender_id, content,
            type=type, metadata=metadata, read_by=read_by,
        ))

        # Persisted from here on: later steps are logged but never turn the send into a failure,
        # otherwise the client would retry and store a duplicate.
        try:
            await self._call(crud.conversation_update(
                self.db, conversation.id,
                last_message_at=message.created_at, updated_at=message.created_at,
            ))
        except Exception as e:
            logger.error(f"Could not update timestamps of {conversation.id} after {message.id}: {e.__class__.__name__}: {e}")

        try:
            await self.publisher.publish(conversation.id, {"type": "chat:message", "data": message.to_dict()})
        except Exception:
            logger.exception(f"Fan-out failed for message {message.id} conversation={conversation.id}")

        try:
            await self._call(crud.audit_create(
                self.db, conversation.agency_id, sender_id, "send",
                conversation_id=conversation.id, message_id=message.id,
                metadata={"type": type, "contentLength": len(content)},
            ))
        except Exception as e:
            logger.error(f"Audit 'send' failed for message {message.id}: {e.__class__.__name__}: {e}")

        logger.info(f"Message sent: {message.id} type={type} conversation={conversation.id} sender={sender_id or 'system'}")
        return RouteResult(status=RouteStatus.OK, message=message)


    async def _agency_limit(self, agency_id: str, action: str) -> Optional[int]:
        """Agency override for the action's per-window limit, or None for the default."""
        try:
            settings = await self._call(crud.settings_get(self.db, agency_id))
        except Exception as e:
            logger.warning(f"Could not load rate limits for agency {agency_id}, using defaults: {type(e).__name__}: {e}")
            return None
        if settings is None:
            return None
        if action == "file":
            return settings.rate_limits.files_per_minute
        return settings.rate_limits.messages_per_minute

    # ─────────────────────────────────────────────
    # Edit / delete / read
    # ─────────────────────────────────────────────

    async def edit_message(self, message_id: str, user_id: str, content: str) -> RouteResult:
        return await self._run("edit", user_id, f"message={message_id}", self._edit(message_id, user_id, content))

    async def _edit(self, message_id: str, user_id: str, content: str) -> RouteResult:
        message = await self._load_message(message_id)
        if message.is_deleted:
            raise InvalidOperation(texts.MESSAGE_DELETED)
        if message.sender_id != user_id:
            raise AccessDenied(texts.NOT_MESSAGE_OWNER)
        if not await self.access.can_access(user_id, message.conversation_id, "write"):
            raise AccessDenied(texts.NO_WRITE_PERMISSION)
        conversation = await self._active_conversation(message.conversation_id)

        updated = await self._call(crud.msg_edit(self.db, message_id, content))
        if updated is None:
            # deleted between the read and the write
            raise InvalidOperation(texts.MESSAGE_DELETED)

        await self.publisher.publish(updated.conversation_id, {"type": "chat:message_edited", "data": updated.to_dict()})
        await self._call(crud.audit_create(
            self.db, conversation.agency_id, user_id, "edit",
            conversation_id=updated.conversation_id, message_id=message_id,
            metadata={"contentLength": len(content)},
        ))
        return RouteResult(status=RouteStatus.OK, message=updated)

    async def delete_message(self, message_id: str, user_id: str) -> RouteResult:
        return await self._run("delete", user_id, f"message={message_id}", self._delete(message_id, user_id))

    async def _delete(self, message_id: str, user_id: str) -> RouteResult:
        message = await self._load_message(message_id)
        if not await self.access.can_access(user_id, message.conversation_id, "write"):
            raise AccessDenied(texts.NO_WRITE_PERMISSION)
        if message.sender_id != user_id:
            user = await self._call(crud.user_get(self.db, user_id))
            if user is None or user.role != ADMIN_ROLE:
                raise AccessDenied(texts.NOT_MESSAGE_OWNER)
        if message.is_deleted:
            return RouteResult(status=RouteStatus.OK, message=message)
        conversation = await self._active_conversation(message.conversation_id)

        if await self._call(crud.msg_soft_delete(self.db, message_id)):
            await self.publisher.publish(message.conversation_id, {
                "type": "chat:message_deleted",
                "data": {"id": message_id, "conversationId": message.conversation_id},
            })
            await self._call(crud.audit_create(
                self.db, conversation.agency_id, user_id, "delete",
                conversation_id=message.conversation_id, message_id=message_id,
            ))
        message.is_deleted = True
        return RouteResult(status=RouteStatus.OK, message=message)

    async def mark_read(self, message_id: str, user_id: str) -> RouteResult:
        return await self._run("read", user_id, f"message={message_id}", self._mark_read(message_id, user_id))

    async def _mark_read(self, message_id: str, user_id: str) -> RouteResult:
        message = await self._load_message(message_id)
        if message.is_deleted:
            raise MessageNotFound(texts.MESSAGE_NOT_FOUND)
        if not await self.access.can_access(user_id, message.conversation_id, "read"):
            raise AccessDenied(texts.NO_READ_PERMISSION)
        conversation = await self._active_conversation(message.conversation_id)

        first_read = user_id not in message.read_by
        read_at = _now().isoformat()
        read_by = await self._call(crud.msg_mark_read(self.db, message_id, user_id, read_at))
        if read_by is None:
            raise MessageNotFound(texts.MESSAGE_NOT_FOUND)
        message.read_by = read_by

        await self.publisher.publish(message.conversation_id, {
            "type": "chat:read",
            "data": {"messageId": message_id, "conversationId": message.conversation_id,
                     "userId": user_id, "readAt": read_at},
        }, exclude=[user_id])
        if first_read:
            await self._call(crud.audit_create(
                self.db, conversation.agency_id, user_id, "read",
                conversation_id=message.conversation_id, message_id=message_id,
            ))
        return RouteResult(status=RouteStatus.OK, message=message)

    # ─────────────────────────────────────────────
    # History
    # ─────────────────────────────────────────────

    async def history(self, conversation_id: str, user_id: str, limit: int = 50) -> RouteResult:
        return await self._run("history", user_id, f"conversation={conversation_id}",
                               self._history(conversation_id, user_id, limit))

    async def _history(self, conversation_id: str, user_id: str, limit: int) -> RouteResult:
        if not await self.access.can_access(user_id, conversation_id, "read"):
            raise AccessDenied(texts.NO_READ_PERMISSION)
        messages = await self._call(crud.msg_list(self.db, conversation_id, limit=limit))
        return RouteResult(status=RouteStatus.OK, messages=messages)

    async def _load_message(self, message_id: str) -> Message:
        message = await self._call(crud.msg_get(self.db, message_id))
        if message is None:
            raise MessageNotFound(texts.MESSAGE_NOT_FOUND)
        return message

    async def _active_conversation(self, conversation_id: str):
        conversation = await self._call(crud.conversation_get(self.db, conversation_id))
        if conversation is None:
            raise MessageNotFound(texts.MESSAGE_NOT_FOUND)
        if not conversation.is_active:
            raise InvalidOperation(texts.CONVERSATION_CLOSED)
        return conversation
