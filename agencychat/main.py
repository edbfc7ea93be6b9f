"""
AgencyChat main entry point.

Starts a FastAPI HTTP server that:
  1. Serves the chat WebSocket at /ws (JSON envelopes, see agencychat.gateway)
  2. Provides a small REST API for the operator console under /api
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from agencychat.config import HOST, PORT, CHAT_VERSION, RATE_LIMIT_SWEEP_INTERVAL, RELOAD_ENABLED, get_config_dict
from agencychat.chat.llm import build_backend
from agencychat.chat.router import RouteStatus
from agencychat.chat.service import ChatService
from agencychat.db import crud
from agencychat.db.database import get_db, close_db
from agencychat.db.models import BotConfig, AIAssistantConfig, RateLimits
from agencychat.gateway import AuthenticationFailed, ConnectionContext, WebSocketTransport, dispatch

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("agencychat")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB and the shared chat service
    db = await get_db()
    service = ChatService(db, backend=build_backend())
    app.state.chat = service
    sweeper = None
    if RATE_LIMIT_SWEEP_INTERVAL > 0:
        sweeper = asyncio.create_task(service.run_rate_limit_sweeper(RATE_LIMIT_SWEEP_INTERVAL))
    logger.info(f"AgencyChat running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop background work and close DB
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    await close_db()


app = FastAPI(
    title="AgencyChat",
    description="Real-time chat core for a multi-tenant agency CRM.",
    version=CHAT_VERSION,
    lifespan=lifespan,
)


def _chat(request: Request) -> ChatService:
    return request.app.state.chat


# ─────────────────────────────────────────────
# WebSocket
# ─────────────────────────────────────────────

@app.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    await websocket.accept()
    service: ChatService = websocket.app.state.chat
    ctx = ConnectionContext(transport=WebSocketTransport(websocket))
    logger.debug("New WebSocket connection established")
    try:
        while True:
            raw = await websocket.receive_text()
            await dispatch(service, ctx, raw)
    except WebSocketDisconnect:
        pass
    except AuthenticationFailed as e:
        logger.warning(f"WebSocket authentication failed: {e}")
        await websocket.close(code=1008)
    finally:
        if ctx.user_id:
            await service.disconnect(ctx.user_id, ctx.transport)


# ─────────────────────────────────────────────
# Users (identity rows mirrored from the CRM)
# ─────────────────────────────────────────────

class UserUpsert(BaseModel):
    id: str
    agency_id: str
    role: str
    display_name: str | None = None


@app.post("/api/users")
async def api_user_upsert(body: UserUpsert):
    db = await get_db()
    try:
        u = await crud.user_upsert(db, body.id, body.agency_id, body.role, body.display_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": u.id, "agency_id": u.agency_id, "role": u.role, "display_name": u.display_name}


# ─────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────

class ConversationCreate(BaseModel):
    agency_id: str
    type: str
    created_by: str
    participants: list[str] = []
    title: str | None = None
    settings: dict | None = None


@app.post("/api/conversations", status_code=201)
async def api_conversation_create(body: ConversationCreate):
    db = await get_db()
    creator = await crud.user_get(db, body.created_by)
    if creator is None or creator.agency_id != body.agency_id:
        raise HTTPException(status_code=400, detail="created_by must be a user of the agency")
    try:
        c = await crud.conversation_create(db, body.agency_id, body.type, body.created_by,
                                           participants=body.participants, title=body.title,
                                           settings=body.settings)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return c.to_dict()


@app.get("/api/conversations")
async def api_conversations(agency_id: str, user_id: str | None = None, include_inactive: bool = False):
    db = await get_db()
    conversations = await crud.conversation_list(db, agency_id, user_id=user_id, include_inactive=include_inactive)
    return [c.to_dict() for c in conversations]


@app.get("/api/conversations/{conversation_id}")
async def api_conversation_get(conversation_id: str):
    db = await get_db()
    c = await crud.conversation_get(db, conversation_id)
    if c is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return c.to_dict()


@app.post("/api/conversations/{conversation_id}/deactivate")
async def api_conversation_deactivate(conversation_id: str):
    db = await get_db()
    ok = await crud.conversation_deactivate(db, conversation_id)
    if not ok:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


@app.delete("/api/conversations/{conversation_id}")
async def api_conversation_purge(conversation_id: str, confirm: bool = False):
    if not confirm:
        raise HTTPException(status_code=400, detail="Purge aborted: confirm must be true. This action is irreversible.")
    db = await get_db()
    result = await crud.conversation_delete(db, conversation_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True, "deleted": result}


@app.get("/api/conversations/{conversation_id}/messages")
async def api_messages(request: Request, conversation_id: str, user_id: str, limit: int = 50):
    result = await _chat(request).router.history(conversation_id, user_id, limit=limit)
    if result.status is RouteStatus.DENIED:
        raise HTTPException(status_code=403, detail=result.error)
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error)
    return [m.to_dict() for m in result.messages]


@app.get("/api/conversations/{conversation_id}/audit")
async def api_audit(conversation_id: str, limit: int = 100):
    db = await get_db()
    entries = await crud.audit_list(db, conversation_id=conversation_id, limit=limit)
    return [{"id": e.id, "agency_id": e.agency_id, "user_id": e.user_id, "message_id": e.message_id,
             "action": e.action, "metadata": e.metadata, "created_at": e.created_at.isoformat()}
            for e in entries]


# ─────────────────────────────────────────────
# Chat settings per agency
# ─────────────────────────────────────────────

class BotConfigBody(BaseModel):
    enabled: bool = True
    name: str = BotConfig.name
    welcome_message: str = BotConfig.welcome_message
    tone: str = "professional"
    auto_respond: bool = True


class AIAssistantConfigBody(BaseModel):
    enabled: bool = True
    model: str = AIAssistantConfig.model
    temperature: float = 0.7
    max_tokens: int = 1000
    system_prompt: str = AIAssistantConfig.system_prompt


class RateLimitsBody(BaseModel):
    messages_per_minute: int | None = Field(default=None, ge=1)
    files_per_minute: int | None = Field(default=None, ge=1)


class SettingsBody(BaseModel):
    bot_config: Optional[BotConfigBody] = None
    ai_assistant_config: Optional[AIAssistantConfigBody] = None
    rate_limits: Optional[RateLimitsBody] = None


@app.get("/api/settings/{agency_id}")
async def api_settings_get(agency_id: str):
    db = await get_db()
    s = await crud.settings_get(db, agency_id)
    if s is None:
        raise HTTPException(status_code=404, detail="No chat settings for this agency")
    return s.to_dict()


@app.put("/api/settings/{agency_id}")
async def api_settings_put(agency_id: str, body: SettingsBody):
    db = await get_db()
    s = await crud.settings_upsert(
        db, agency_id,
        bot_config=BotConfig(**body.bot_config.model_dump()) if body.bot_config else None,
        ai_assistant_config=AIAssistantConfig(**body.ai_assistant_config.model_dump()) if body.ai_assistant_config else None,
        rate_limits=RateLimits(**body.rate_limits.model_dump()) if body.rate_limits else None,
    )
    return s.to_dict()


# ─────────────────────────────────────────────
# Presence / health
# ─────────────────────────────────────────────

@app.get("/api/presence/{agency_id}")
async def api_presence(request: Request, agency_id: str):
    sessions = _chat(request).registry.sessions_for_agency(agency_id)
    return [{"user_id": s.user_id, "role": s.role, "last_seen": s.last_seen.isoformat()} for s in sessions]


@app.get("/api/config")
async def api_config():
    return get_config_dict()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "AgencyChat", "version": CHAT_VERSION}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("agencychat.main:app", host=HOST, port=PORT, reload=RELOAD_ENABLED)
