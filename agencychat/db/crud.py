"""
CRUD operations for AgencyChat (the persistence gateway of the chat core).
All functions are async and receive the aiosqlite connection from the caller.
"""
import json
import uuid
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional, Any

import aiosqlite

from agencychat.db.models import (
    User, Conversation, ConversationSettings, Message, AuditEntry,
    ChatSettings, BotConfig, AIAssistantConfig, RateLimits,
    CONVERSATION_TYPES, MESSAGE_TYPES, AUDIT_ACTIONS, RESERVED_USER_IDS,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        logger.warning(f"Ignoring malformed JSON column value: {value[:80]!r}")
        return default


def _unique(ids: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for i in ids:
        if i:
            seen.setdefault(str(i), None)
    return list(seen)


# ─────────────────────────────────────────────
# Users (identity lookup only)
# ─────────────────────────────────────────────

async def user_upsert(db: aiosqlite.Connection, user_id: str, agency_id: str, role: str,
                      display_name: Optional[str] = None) -> User:
    if not user_id or user_id.lower() in RESERVED_USER_IDS:
        raise ValueError(f"User id '{user_id}' is empty or reserved")
    await db.execute(
        "INSERT INTO users (id, agency_id, role, display_name) VALUES (?, ?, ?, ?) "
        "ON CONFLICT(id) DO UPDATE SET agency_id = excluded.agency_id, role = excluded.role, "
        "display_name = excluded.display_name",
        (user_id, agency_id, role, display_name),
    )
    await db.commit()
    return User(id=user_id, agency_id=agency_id, role=role, display_name=display_name)


async def user_get(db: aiosqlite.Connection, user_id: str) -> Optional[User]:
    async with db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return User(id=row["id"], agency_id=row["agency_id"], role=row["role"], display_name=row["display_name"])


# ─────────────────────────────────────────────
# Conversation CRUD
# ─────────────────────────────────────────────

async def conversation_create(
    db: aiosqlite.Connection,
    agency_id: str,
    type: str,
    created_by: str,
    participants: Optional[list[str]] = None,
    title: Optional[str] = None,
    settings: Optional[dict] = None,
) -> Conversation:
    if type not in CONVERSATION_TYPES:
        raise ValueError(f"Invalid conversation type '{type}'. Must be one of {CONVERSATION_TYPES}")
    cid = str(uuid.uuid4())
    now = _now()
    members = _unique([created_by] + list(participants or []))
    conv_settings = ConversationSettings.from_dict(settings)
    await db.execute(
        "INSERT INTO conversations (id, agency_id, type, title, participants, created_by, is_active, settings, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)",
        (cid, agency_id, type, title, json.dumps(members), created_by,
         json.dumps(asdict(conv_settings)), now, now),
    )
    await db.commit()
    logger.info(f"Conversation created: {cid} type={type} agency={agency_id}")
    return Conversation(
        id=cid, agency_id=agency_id, type=type, title=title, participants=members,
        created_by=created_by, last_message_at=None, is_active=True, settings=conv_settings,
        created_at=_parse_dt(now), updated_at=_parse_dt(now),
    )


async def conversation_get(db: aiosqlite.Connection, conversation_id: str) -> Optional[Conversation]:
    async with db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_conversation(row)


async def conversation_list(
    db: aiosqlite.Connection,
    agency_id: str,
    user_id: Optional[str] = None,
    include_inactive: bool = False,
) -> list[Conversation]:
    if include_inactive:
        sql = "SELECT * FROM conversations WHERE agency_id = ? ORDER BY COALESCE(last_message_at, created_at) DESC"
    else:
        sql = ("SELECT * FROM conversations WHERE agency_id = ? AND is_active = 1 "
               "ORDER BY COALESCE(last_message_at, created_at) DESC")
    async with db.execute(sql, (agency_id,)) as cur:
        rows = await cur.fetchall()
    conversations = [_row_to_conversation(r) for r in rows]
    if user_id:
        conversations = [c for c in conversations if user_id in c.participants]
    return conversations


async def conversation_update(db: aiosqlite.Connection, conversation_id: str, **fields: Any) -> bool:
    """Update selected columns. Accepts title, participants, last_message_at, updated_at, is_active, settings."""
    allowed = {"title", "participants", "last_message_at", "updated_at", "is_active", "settings"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "participants":
            value = json.dumps(_unique(list(value)))
        elif key == "settings":
            value = json.dumps(asdict(ConversationSettings.from_dict(value)))
        elif key == "is_active":
            value = 1 if value else 0
        elif isinstance(value, datetime):
            value = value.isoformat()
        values[key] = value
    values.setdefault("updated_at", _now())

    assignments = ", ".join(f"{k} = ?" for k in values)
    async with db.execute(
        f"UPDATE conversations SET {assignments} WHERE id = ?",
        (*values.values(), conversation_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def conversation_deactivate(db: aiosqlite.Connection, conversation_id: str) -> bool:
    ok = await conversation_update(db, conversation_id, is_active=False)
    if ok:
        logger.info(f"Conversation deactivated: {conversation_id}")
    return ok


async def conversation_delete(db: aiosqlite.Connection, conversation_id: str) -> Optional[dict]:
    """Administrative purge: remove the conversation with its messages and audit rows."""
    async with db.execute("SELECT id FROM conversations WHERE id = ?", (conversation_id,)) as cur:
        if await cur.fetchone() is None:
            return None
    async with db.execute("DELETE FROM chat_audit_log WHERE conversation_id = ?", (conversation_id,)) as cur:
        audit_deleted = cur.rowcount
    async with db.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)) as cur:
        messages_deleted = cur.rowcount
    await db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
    await db.commit()
    logger.warning(f"Conversation purged: {conversation_id} ({messages_deleted} messages, {audit_deleted} audit rows)")
    return {"conversation_id": conversation_id, "messages_deleted": messages_deleted,
            "audit_deleted": audit_deleted}


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        agency_id=row["agency_id"],
        type=row["type"],
        title=row["title"],
        participants=_loads(row["participants"], []),
        created_by=row["created_by"],
        last_message_at=_parse_dt(row["last_message_at"]) if row["last_message_at"] else None,
        is_active=bool(row["is_active"]),
        settings=ConversationSettings.from_dict(_loads(row["settings"], {})),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def msg_create(
    db: aiosqlite.Connection,
    conversation_id: str,
    sender_id: Optional[str],
    content: str,
    type: str = "text",
    metadata: Optional[dict] = None,
    read_by: Optional[dict[str, str]] = None,
) -> Message:
    if type not in MESSAGE_TYPES:
        raise ValueError(f"Invalid message type '{type}'. Must be one of {MESSAGE_TYPES}")
    mid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO messages (id, conversation_id, sender_id, content, type, metadata, read_by, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (mid, conversation_id, sender_id, content, type,
         json.dumps(metadata or {}), json.dumps(read_by or {}), now),
    )
    await db.commit()
    logger.debug(f"Message stored: {mid} type={type} conversation={conversation_id}")
    return Message(
        id=mid, conversation_id=conversation_id, sender_id=sender_id, content=content,
        type=type, metadata=dict(metadata or {}), read_by=dict(read_by or {}),
        is_edited=False, edited_at=None, is_deleted=False, created_at=_parse_dt(now),
    )


async def msg_get(db: aiosqlite.Connection, message_id: str) -> Optional[Message]:
    """Fetch a message by id, including soft-deleted ones."""
    async with db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def msg_list(
    db: aiosqlite.Connection,
    conversation_id: str,
    limit: int = 50,
    include_deleted: bool = False,
) -> list[Message]:
    """Return the latest `limit` messages of a conversation, oldest first."""
    if include_deleted:
        sql = ("SELECT * FROM messages WHERE conversation_id = ? "
               "ORDER BY created_at DESC, rowid DESC LIMIT ?")
    else:
        sql = ("SELECT * FROM messages WHERE conversation_id = ? AND is_deleted = 0 "
               "ORDER BY created_at DESC, rowid DESC LIMIT ?")
    async with db.execute(sql, (conversation_id, limit)) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in reversed(rows)]


async def msg_edit(db: aiosqlite.Connection, message_id: str, content: str) -> Optional[Message]:
    """Replace content of a live message. Returns None if missing or already deleted."""
    now = _now()
    async with db.execute(
        "UPDATE messages SET content = ?, is_edited = 1, edited_at = ? WHERE id = ? AND is_deleted = 0",
        (content, now, message_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        return None
    return await msg_get(db, message_id)


async def msg_soft_delete(db: aiosqlite.Connection, message_id: str) -> bool:
    """Mark a message deleted. Returns True only when this call flipped the flag."""
    async with db.execute(
        "UPDATE messages SET is_deleted = 1 WHERE id = ? AND is_deleted = 0", (message_id,)
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def msg_mark_read(db: aiosqlite.Connection, message_id: str, user_id: str,
                        when: Optional[str] = None) -> Optional[dict[str, str]]:
    """Record a read receipt and return the resulting read_by map.

    The merge is done by SQLite's json_set in one statement so that concurrent
    receipts for different users never overwrite each other.
    """
    when = when or _now()
    async with db.execute(
        "UPDATE messages SET read_by = json_set(COALESCE(read_by, '{}'), '$.' || json_quote(?), ?) WHERE id = ?",
        (user_id, when, message_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        return None
    async with db.execute("SELECT read_by FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    return _loads(row["read_by"], {})


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        content=row["content"],
        type=row["type"],
        metadata=_loads(row["metadata"], {}),
        read_by=_loads(row["read_by"], {}),
        is_edited=bool(row["is_edited"]),
        edited_at=_parse_dt(row["edited_at"]) if row["edited_at"] else None,
        is_deleted=bool(row["is_deleted"]),
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Audit log (append-only)
# ─────────────────────────────────────────────

async def audit_create(
    db: aiosqlite.Connection,
    agency_id: str,
    user_id: Optional[str],
    action: str,
    conversation_id: Optional[str] = None,
    message_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Invalid audit action '{action}'. Must be one of {AUDIT_ACTIONS}")
    aid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO chat_audit_log (id, agency_id, user_id, conversation_id, message_id, action, metadata, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (aid, agency_id, user_id, conversation_id, message_id, action, json.dumps(metadata or {}), now),
    )
    await db.commit()
    return AuditEntry(id=aid, agency_id=agency_id, user_id=user_id, conversation_id=conversation_id,
                      message_id=message_id, action=action, metadata=dict(metadata or {}),
                      created_at=_parse_dt(now))


async def audit_list(
    db: aiosqlite.Connection,
    conversation_id: Optional[str] = None,
    agency_id: Optional[str] = None,
    limit: int = 100,
) -> list[AuditEntry]:
    clauses, params = [], []
    if conversation_id:
        clauses.append("conversation_id = ?")
        params.append(conversation_id)
    if agency_id:
        clauses.append("agency_id = ?")
        params.append(agency_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with db.execute(
        f"SELECT * FROM chat_audit_log {where} ORDER BY created_at ASC, rowid ASC LIMIT ?",
        (*params, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [AuditEntry(
        id=r["id"], agency_id=r["agency_id"], user_id=r["user_id"],
        conversation_id=r["conversation_id"], message_id=r["message_id"], action=r["action"],
        metadata=_loads(r["metadata"], {}), created_at=_parse_dt(r["created_at"]),
    ) for r in rows]


# ─────────────────────────────────────────────
# Chat settings (per agency)
# ─────────────────────────────────────────────

async def settings_get(db: aiosqlite.Connection, agency_id: str) -> Optional[ChatSettings]:
    async with db.execute("SELECT * FROM chat_settings WHERE agency_id = ?", (agency_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    bot = _loads(row["bot_config"], None)
    ai = _loads(row["ai_assistant_config"], None)
    limits = _loads(row["rate_limits"], {})
    return ChatSettings(
        agency_id=row["agency_id"],
        bot_config=BotConfig(**bot) if bot is not None else None,
        ai_assistant_config=AIAssistantConfig(**ai) if ai is not None else None,
        rate_limits=RateLimits(**limits),
        updated_at=_parse_dt(row["updated_at"]),
    )


async def settings_upsert(
    db: aiosqlite.Connection,
    agency_id: str,
    bot_config: Optional[BotConfig] = None,
    ai_assistant_config: Optional[AIAssistantConfig] = None,
    rate_limits: Optional[RateLimits] = None,
) -> ChatSettings:
    """Replace the agency's chat settings row."""
    now = _now()
    limits = rate_limits or RateLimits()
    await db.execute(
        "INSERT INTO chat_settings (agency_id, bot_config, ai_assistant_config, rate_limits, updated_at) "
        "VALUES (?, ?, ?, ?, ?) "
        "ON CONFLICT(agency_id) DO UPDATE SET bot_config = excluded.bot_config, "
        "ai_assistant_config = excluded.ai_assistant_config, rate_limits = excluded.rate_limits, "
        "updated_at = excluded.updated_at",
        (
            agency_id,
            json.dumps(asdict(bot_config)) if bot_config else None,
            json.dumps(asdict(ai_assistant_config)) if ai_assistant_config else None,
            json.dumps(asdict(limits)),
            now,
        ),
    )
    await db.commit()
    logger.info(f"Chat settings updated for agency {agency_id}")
    return ChatSettings(agency_id=agency_id, bot_config=bot_config, ai_assistant_config=ai_assistant_config,
                        rate_limits=limits, updated_at=_parse_dt(now))
