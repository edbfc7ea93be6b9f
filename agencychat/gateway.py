"""
WebSocket envelope handling for AgencyChat.

Each inbound frame is a JSON envelope {type, data?, conversationId?, messageId?}.
`dispatch` parses it, routes it to the handler for its type and answers every
problem with an error envelope on the same connection. The only fault that
ends a connection is a failed `auth` (AuthenticationFailed).
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.websockets import WebSocket, WebSocketState

from agencychat.chat import texts
from agencychat.chat.service import ChatService
from agencychat.chat.transport import Transport, safe_send
from agencychat.db import crud
from agencychat.db.models import RESERVED_USER_IDS

logger = logging.getLogger(__name__)


class SocketEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    data: Optional[dict[str, Any]] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    message_id: Optional[str] = Field(default=None, alias="messageId")

    @property
    def kind(self) -> str:
        """Envelope type without the optional 'chat:' prefix."""
        return self.type[5:] if self.type.startswith("chat:") else self.type


class AuthenticationFailed(Exception):
    """Raised when the auth envelope cannot be verified; the connection must be closed."""


class WebSocketTransport:
    """Transport adapter over a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (self.websocket.client_state == WebSocketState.CONNECTED
                and self.websocket.application_state == WebSocketState.CONNECTED)

    async def send_json(self, data: dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(data, ensure_ascii=False))


@dataclass
class ConnectionContext:
    transport: Transport
    user_id: Optional[str] = None
    agency_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def error_envelope(message: str, reason: Optional[str] = None) -> dict[str, Any]:
    data: dict[str, Any] = {"message": message}
    if reason:
        data["reason"] = reason
    return {"type": "error", "data": data}


def _text(data: Optional[dict], key: str) -> Optional[str]:
    value = (data or {}).get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


# ─────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────

async def handle_auth(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    data = env.data or {}
    user_id = _text(data, "userId")
    agency_id = _text(data, "agencyId") or _text(data, "tenantId")
    if not user_id or not agency_id or user_id.lower() in RESERVED_USER_IDS:
        await safe_send(ctx.transport, {"type": "chat:auth_error", "data": {"message": texts.INVALID_AUTH}})
        raise AuthenticationFailed(f"missing or reserved userId/agencyId: {user_id!r}")

    try:
        user = await asyncio.wait_for(crud.user_get(service.db, user_id), timeout=service.timeout)
    except Exception as e:
        logger.error(f"Auth lookup failed for {user_id}: {type(e).__name__}: {e}")
        user = None
    if user is None or user.agency_id != agency_id:
        await safe_send(ctx.transport, {"type": "chat:auth_error", "data": {"message": texts.INVALID_AUTH}})
        raise AuthenticationFailed(f"unknown user or agency mismatch for {user_id}")

    claimed_role = data.get("role")
    if claimed_role and claimed_role != user.role:
        logger.warning(f"Role claim '{claimed_role}' for {user_id} ignored; stored role is '{user.role}'")

    if ctx.authenticated and ctx.user_id != user_id:
        await service.disconnect(ctx.user_id, ctx.transport)

    ctx.user_id, ctx.agency_id, ctx.role = user.id, user.agency_id, user.role
    await service.connect(user.id, user.agency_id, user.role, ctx.transport)
    await safe_send(ctx.transport, {
        "type": "chat:auth_success",
        "data": {"userId": user.id, "agencyId": user.agency_id, "role": user.role},
    })


async def handle_join(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    if not env.conversation_id:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    result = await service.join(ctx.user_id, ctx.agency_id, env.conversation_id)
    if not result.ok:
        await safe_send(ctx.transport, result.error_envelope())
        return
    await safe_send(ctx.transport, {
        "type": "chat:conversation_history",
        "data": {"conversationId": env.conversation_id, "messages": [m.to_dict() for m in result.messages]},
    })


async def handle_leave(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    if env.conversation_id:
        await service.leave(ctx.user_id, ctx.agency_id, env.conversation_id)


async def handle_message(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    content = _text(env.data, "content")
    if not env.conversation_id or not content:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    data = env.data or {}
    msg_type = data.get("type") or "text"
    if not isinstance(msg_type, str):
        await safe_send(ctx.transport, error_envelope(texts.UNSUPPORTED_TYPE, "invalid"))
        return
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None
    result = await service.router.send_message(env.conversation_id, ctx.user_id, content, msg_type, metadata)
    if not result.ok:
        await safe_send(ctx.transport, result.error_envelope())


async def handle_typing(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    if env.conversation_id:
        is_typing = (env.data or {}).get("isTyping", True)
        await service.typing(ctx.user_id, env.conversation_id, bool(is_typing))


async def handle_read(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    if not env.message_id:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    result = await service.router.mark_read(env.message_id, ctx.user_id)
    if not result.ok:
        await safe_send(ctx.transport, result.error_envelope())


async def handle_edit(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    content = _text(env.data, "content")
    if not env.message_id or not content:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    result = await service.router.edit_message(env.message_id, ctx.user_id, content)
    if not result.ok:
        await safe_send(ctx.transport, result.error_envelope())


async def handle_delete(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    if not env.message_id:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    result = await service.router.delete_message(env.message_id, ctx.user_id)
    if not result.ok:
        await safe_send(ctx.transport, result.error_envelope())


async def handle_ai_assistant(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    question = _text(env.data, "message")
    if not env.conversation_id or not question:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    result = await service.ask_assistant(ctx.user_id, ctx.agency_id, env.conversation_id, question)
    # None: the agency has no assistant enabled, stay silent
    if result is not None and not result.ok:
        await safe_send(ctx.transport, result.error_envelope())


async def handle_support_bot(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    message = _text(env.data, "message")
    if not env.conversation_id or not message:
        await safe_send(ctx.transport, error_envelope(texts.MISSING_FIELDS, "invalid"))
        return
    result = await service.ask_support_bot(ctx.user_id, ctx.agency_id, env.conversation_id, message)
    if not result.ok:
        await safe_send(ctx.transport, result.error_envelope())


async def handle_ping(service: ChatService, ctx: ConnectionContext, env: SocketEnvelope) -> None:
    await safe_send(ctx.transport, {"type": "chat:pong", "data": {}})


Handler = Callable[[ChatService, ConnectionContext, SocketEnvelope], Awaitable[None]]

HANDLERS: dict[str, Handler] = {
    "auth": handle_auth,
    "join": handle_join,
    "leave": handle_leave,
    "message": handle_message,
    "typing": handle_typing,
    "read": handle_read,
    "edit": handle_edit,
    "delete": handle_delete,
    "ai_assistant": handle_ai_assistant,
    "support_bot": handle_support_bot,
    "ping": handle_ping,
}

# Envelope types accepted before authentication
PUBLIC_TYPES = {"auth", "ping"}


async def dispatch(service: ChatService, ctx: ConnectionContext, raw: str) -> None:
    """Handle one inbound frame. Raises AuthenticationFailed only for a rejected auth."""
    try:
        env = SocketEnvelope.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.info(f"Malformed envelope from {ctx.user_id or 'anonymous'}: {type(e).__name__}")
        await safe_send(ctx.transport, error_envelope(texts.PROCESSING_ERROR, "invalid"))
        return

    handler = HANDLERS.get(env.kind)
    if handler is None:
        await safe_send(ctx.transport, error_envelope(texts.UNSUPPORTED_TYPE, "invalid"))
        return
    if env.kind not in PUBLIC_TYPES and not ctx.authenticated:
        await safe_send(ctx.transport, error_envelope(texts.NOT_AUTHENTICATED, "denied"))
        return

    if ctx.authenticated:
        service.registry.touch(ctx.user_id)
    try:
        await handler(service, ctx, env)
    except AuthenticationFailed:
        raise
    except Exception:
        logger.exception(f"Error handling '{env.kind}' for user={ctx.user_id} conversation={env.conversation_id}")
        await safe_send(ctx.transport, error_envelope(texts.PROCESSING_ERROR))
