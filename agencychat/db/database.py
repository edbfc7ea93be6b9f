"""
SQLite storage for the chat core: the shared aiosqlite connection used by the
app and the idempotent schema for conversations, messages, settings and audit.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from agencychat.config import DB_PATH

logger = logging.getLogger(__name__)

# Shared by every request and WebSocket handler of the process
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def connect(path: str = DB_PATH) -> aiosqlite.Connection:
    """Open a configured connection with the chat schema in place."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # in-memory databases report "memory" and ignore WAL
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def get_db() -> aiosqlite.Connection:
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await connect(DB_PATH)
                logger.info(f"Chat database ready at {DB_PATH}")
    return _db


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Users: identity rows owned by the CRM; the chat core only reads
        -- tenant and role from here.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS users (
            id            TEXT PRIMARY KEY,
            agency_id     TEXT NOT NULL,
            role          TEXT NOT NULL,
            display_name  TEXT
        );

        -- ----------------------------------------------------------------
        -- Conversation: direct, group, support or AI assistant chat
        -- participants / settings are JSON text columns.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS conversations (
            id               TEXT PRIMARY KEY,
            agency_id        TEXT NOT NULL,
            type             TEXT NOT NULL,
            title            TEXT,
            participants     TEXT NOT NULL DEFAULT '[]',
            created_by       TEXT NOT NULL,
            last_message_at  TEXT,
            is_active        INTEGER NOT NULL DEFAULT 1,
            settings         TEXT NOT NULL DEFAULT '{}',
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_conversations_agency
            ON conversations(agency_id);

        -- ----------------------------------------------------------------
        -- Message: deletes are soft (is_deleted); rows are never removed
        -- except by an administrative conversation purge.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id               TEXT PRIMARY KEY,
            conversation_id  TEXT NOT NULL REFERENCES conversations(id),
            sender_id        TEXT,
            content          TEXT NOT NULL,
            type             TEXT NOT NULL DEFAULT 'text',
            metadata         TEXT NOT NULL DEFAULT '{}',
            read_by          TEXT NOT NULL DEFAULT '{}',
            is_edited        INTEGER NOT NULL DEFAULT 0,
            edited_at        TEXT,
            is_deleted       INTEGER NOT NULL DEFAULT 0,
            created_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
            ON messages(conversation_id, created_at);

        -- ----------------------------------------------------------------
        -- Chat settings: one row per agency (bot, AI assistant, rate limits)
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chat_settings (
            agency_id            TEXT PRIMARY KEY,
            bot_config           TEXT,
            ai_assistant_config  TEXT,
            rate_limits          TEXT NOT NULL DEFAULT '{}',
            updated_at           TEXT NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Audit log: append-only
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chat_audit_log (
            id               TEXT PRIMARY KEY,
            agency_id        TEXT NOT NULL,
            user_id          TEXT,
            conversation_id  TEXT,
            message_id       TEXT,
            action           TEXT NOT NULL,
            metadata         TEXT NOT NULL DEFAULT '{}',
            created_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_audit_conversation
            ON chat_audit_log(conversation_id, created_at);
    """)
    await db.commit()
    logger.info("Schema initialized.")
