"""
Automated responders: the staff-facing AI assistant and the client-facing
support bot. Both are gated by the agency's chat settings and never raise;
failures degrade to fixed user-facing texts.
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from agencychat.chat import texts
from agencychat.chat.llm import LLMBackend
from agencychat.config import BACKEND_TIMEOUT, LLM_TIMEOUT
from agencychat.db import crud
from agencychat.db.models import BotConfig, Message

logger = logging.getLogger(__name__)

# Messages fetched for context, and how many of them make it into the prompt
CONTEXT_FETCH_LIMIT = 10
CONTEXT_MESSAGES = 5


@dataclass
class AssistantReply:
    content: str
    model: Optional[str] = None
    processing_time: int = 0     # milliseconds
    generated: bool = False      # False for fixed fallback texts


def render_context(messages: list[Message], keep: int = CONTEXT_MESSAGES) -> str:
    """Render the last `keep` visible text turns as 'Assistant:' / 'User:' lines."""
    turns = [m for m in messages if not m.is_deleted and m.type in ("text", "ai_response")]
    lines = []
    for m in turns[-keep:]:
        speaker = "Assistant" if m.type == "ai_response" else "User"
        lines.append(f"{speaker}: {m.content}")
    return "\n".join(lines)


def build_system_prompt(agency_prompt: str, context: str) -> str:
    return (
        f"{agency_prompt}\n\n"
        f"{texts.AI_CONTEXT_HEADER}\n"
        f"{context}\n\n"
        f"{texts.AI_INSTRUCTIONS}"
    )


class AIAssistant:
    def __init__(
        self,
        db: aiosqlite.Connection,
        backend: Optional[LLMBackend],
        timeout: float = LLM_TIMEOUT,
        backend_timeout: float = BACKEND_TIMEOUT,
    ) -> None:
        self.db = db
        self.backend = backend
        self.timeout = timeout
        self.backend_timeout = backend_timeout

    async def respond(self, conversation_id: str, user_message: str, agency_id: str) -> Optional[AssistantReply]:
        """Return the assistant's reply, or None when the agency has no enabled assistant."""
        try:
            settings = await asyncio.wait_for(crud.settings_get(self.db, agency_id), timeout=self.backend_timeout)
        except Exception:
            logger.exception(f"AI assistant could not load settings: agency={agency_id} conversation={conversation_id}")
            return AssistantReply(content=texts.AI_ERROR)

        config = settings.ai_assistant_config if settings else None
        if config is None or not config.enabled:
            return None

        if self.backend is None:
            return AssistantReply(content=texts.AI_UNAVAILABLE)

        started = time.monotonic()
        try:
            history = await asyncio.wait_for(
                crud.msg_list(self.db, conversation_id, limit=CONTEXT_FETCH_LIMIT),
                timeout=self.backend_timeout,
            )
            system_prompt = build_system_prompt(config.system_prompt, render_context(history))
            text = await asyncio.wait_for(
                self.backend.complete(
                    system_prompt=system_prompt,
                    user_message=user_message,
                    model=config.model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"AI assistant timed out after {self.timeout}s: agency={agency_id} conversation={conversation_id}")
            return AssistantReply(content=texts.AI_ERROR, model=config.model)
        except Exception:
            logger.exception(f"AI assistant error: agency={agency_id} conversation={conversation_id}")
            return AssistantReply(content=texts.AI_ERROR, model=config.model)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if not text or not text.strip():
            return AssistantReply(content=texts.AI_EMPTY_REPLY, model=config.model, processing_time=elapsed_ms)
        return AssistantReply(content=text, model=config.model, processing_time=elapsed_ms, generated=True)


# ─────────────────────────────────────────────
# Support bot
# ─────────────────────────────────────────────

# Hebrew keywords match anywhere (prefixes such as "ו" or "ה" attach to words);
# English ones need word boundaries.
GREETING_PATTERN = re.compile(r"שלום|היי|\b(?:hello|hi|hey)\b")
SUPPORT_PATTERN = re.compile(r"תמיכה|עזרה|\b(?:help|support)\b")
HUMAN_PATTERN = re.compile(r"נציג|אדם|\b(?:agent|human|representative)\b")


def reply_for(message: str, bot_config: Optional[BotConfig]) -> str:
    """Keyword policy of the support bot. Pure function of the text and the config."""
    if bot_config is None or not bot_config.enabled:
        return texts.BOT_UNAVAILABLE

    text = (message or "").lower()
    if GREETING_PATTERN.search(text):
        return bot_config.welcome_message
    if SUPPORT_PATTERN.search(text):
        return texts.BOT_HELP_MENU
    if HUMAN_PATTERN.search(text):
        return texts.BOT_TRANSFER
    return texts.BOT_FALLBACK


@dataclass
class BotReply:
    content: str
    bot_name: str


class SupportBot:
    def __init__(self, db: aiosqlite.Connection, timeout: float = BACKEND_TIMEOUT) -> None:
        self.db = db
        self.timeout = timeout

    async def reply(self, message: str, agency_id: str) -> BotReply:
        try:
            settings = await asyncio.wait_for(crud.settings_get(self.db, agency_id), timeout=self.timeout)
        except Exception:
            logger.exception(f"Support bot could not load settings: agency={agency_id}")
            return BotReply(content=texts.BOT_UNAVAILABLE, bot_name=texts.BOT_DEFAULT_NAME)

        config = settings.bot_config if settings else None
        name = config.name if config and config.name else texts.BOT_DEFAULT_NAME
        return BotReply(content=reply_for(message, config), bot_name=name)
