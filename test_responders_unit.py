"""
Unit tests for the AI assistant and the keyword support bot.

The language model is always a FakeLLM; nothing here reaches the network.
"""
import asyncio
from unittest.mock import patch

import pytest

from agencychat.chat import texts
from agencychat.chat.responders import AIAssistant, SupportBot, render_context, reply_for
from agencychat.chat.router import RouteStatus
from agencychat.db import crud
from agencychat.db.models import AIAssistantConfig, BotConfig


# ─────────────────────────────────────────────
# AI assistant
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_settings_means_no_reply_and_no_backend_call(seeded, fake_llm):
    llm = fake_llm()
    assistant = AIAssistant(seeded.db, llm)

    assert await assistant.respond(seeded.group.id, "עזור לי", "a1") is None
    assert llm.calls == []


@pytest.mark.asyncio
async def test_disabled_assistant_is_silent(seeded, fake_llm):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig(enabled=False))
    llm = fake_llm()
    assistant = AIAssistant(seeded.db, llm)

    assert await assistant.respond(seeded.group.id, "עזור לי", "a1") is None
    assert llm.calls == []


@pytest.mark.asyncio
async def test_missing_backend_reports_unavailable(seeded):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig())
    reply = await AIAssistant(seeded.db, None).respond(seeded.group.id, "?", "a1")
    assert reply.content == texts.AI_UNAVAILABLE
    assert reply.generated is False


@pytest.mark.asyncio
async def test_reply_uses_agency_config_and_recent_context(seeded, fake_llm):
    config = AIAssistantConfig(model="gpt-4o-mini", temperature=0.2, max_tokens=256,
                               system_prompt="אתה עוזר של סוכנות בדיקה")
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=config)
    await crud.msg_create(seeded.db, seeded.group.id, "alice", "מה הסטטוס של הקמפיין?")
    await crud.msg_create(seeded.db, seeded.group.id, None, "הקמפיין באוויר", type="ai_response")
    llm = fake_llm(reply="כדאי להגדיל תקציב")

    reply = await AIAssistant(seeded.db, llm).respond(seeded.group.id, "מה הלאה?", "a1")

    assert reply.content == "כדאי להגדיל תקציב"
    assert reply.model == "gpt-4o-mini"
    assert reply.generated is True
    assert reply.processing_time >= 0

    call = llm.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["temperature"] == 0.2
    assert call["max_tokens"] == 256
    assert call["user_message"] == "מה הלאה?"
    assert call["system_prompt"].startswith("אתה עוזר של סוכנות בדיקה")
    assert "User: מה הסטטוס של הקמפיין?" in call["system_prompt"]
    assert "Assistant: הקמפיין באוויר" in call["system_prompt"]


@pytest.mark.asyncio
async def test_backend_error_becomes_fixed_text(seeded, fake_llm):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig())
    llm = fake_llm(error=RuntimeError("upstream 500 with secret key sk-xyz"))

    reply = await AIAssistant(seeded.db, llm).respond(seeded.group.id, "?", "a1")

    assert reply.content == texts.AI_ERROR
    assert "sk-xyz" not in reply.content


@pytest.mark.asyncio
async def test_backend_timeout_becomes_fixed_text(seeded):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig())

    class SlowLLM:
        async def complete(self, **kwargs):
            await asyncio.sleep(5)
            return "too late"

    reply = await AIAssistant(seeded.db, SlowLLM(), timeout=0.05).respond(seeded.group.id, "?", "a1")
    assert reply.content == texts.AI_ERROR


@pytest.mark.asyncio
async def test_empty_completion(seeded, fake_llm):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig())
    reply = await AIAssistant(seeded.db, fake_llm(reply="   ")).respond(seeded.group.id, "?", "a1")
    assert reply.content == texts.AI_EMPTY_REPLY
    assert reply.generated is False


@pytest.mark.asyncio
async def test_settings_lookup_failure(seeded, fake_llm):
    llm = fake_llm()
    with patch.object(crud, "settings_get", side_effect=RuntimeError("db gone")):
        reply = await AIAssistant(seeded.db, llm).respond(seeded.group.id, "?", "a1")
    assert reply.content == texts.AI_ERROR
    assert llm.calls == []


def _msg(content, type="text", deleted=False):
    from datetime import datetime, timezone
    from agencychat.db.models import Message
    return Message(id=content, conversation_id="c", sender_id="u", content=content, type=type,
                   metadata={}, read_by={}, is_edited=False, edited_at=None, is_deleted=deleted,
                   created_at=datetime.now(timezone.utc))


def test_render_context_keeps_last_five_text_turns():
    messages = [_msg(f"m{i}") for i in range(7)]
    messages.insert(3, _msg("report.pdf", type="file"))
    messages.append(_msg("gone", deleted=True))

    lines = render_context(messages).splitlines()

    assert lines == [f"User: m{i}" for i in range(2, 7)]


# ─────────────────────────────────────────────
# Support bot
# ─────────────────────────────────────────────

CONFIG = BotConfig(name="דנה", welcome_message="ברוכים הבאים לסוכנות!")


@pytest.mark.parametrize("message", ["שלום", "ושלום לכם", "Hi there", "HELLO", "hey!"])
def test_greeting_gets_welcome(message):
    assert reply_for(message, CONFIG) == "ברוכים הבאים לסוכנות!"


@pytest.mark.parametrize("message", ["אני צריך עזרה", "תמיכה בבקשה", "need HELP", "support"])
def test_support_keywords_get_menu(message):
    assert reply_for(message, CONFIG) == texts.BOT_HELP_MENU


@pytest.mark.parametrize("message", ["אפשר נציג?", "I want a human", "talk to an agent"])
def test_human_keywords_get_transfer(message):
    assert reply_for(message, CONFIG) == texts.BOT_TRANSFER


@pytest.mark.parametrize("message", ["this is fine", "history lesson", "mhelpful", ""])
def test_everything_else_gets_fallback(message):
    assert reply_for(message, CONFIG) == texts.BOT_FALLBACK


def test_greeting_wins_over_other_keywords():
    assert reply_for("שלום, אני צריך עזרה מנציג", CONFIG) == CONFIG.welcome_message
    assert reply_for("help me reach an agent", CONFIG) == texts.BOT_HELP_MENU


def test_disabled_or_missing_bot():
    assert reply_for("שלום", None) == texts.BOT_UNAVAILABLE
    assert reply_for("שלום", BotConfig(enabled=False)) == texts.BOT_UNAVAILABLE


@pytest.mark.asyncio
async def test_support_bot_reads_agency_config(seeded):
    await crud.settings_upsert(seeded.db, "a1", bot_config=CONFIG)
    bot = SupportBot(seeded.db)

    reply = await bot.reply("שלום", "a1")
    assert reply.content == CONFIG.welcome_message
    assert reply.bot_name == "דנה"
    assert (await bot.reply("שלום", "a2")).content == texts.BOT_UNAVAILABLE


# ─────────────────────────────────────────────
# Through the chat service
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_assistant_reply_is_posted_as_system_message(seeded, make_service, fake_llm, transport_factory):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig(model="gpt-4"))
    service = make_service(backend=fake_llm(reply="תשובה"))
    bob = transport_factory()
    await service.connect("bob", "a1", "team_member", bob)
    service.membership.join("bob", seeded.group.id)

    result = await service.ask_assistant("admin", "a1", seeded.group.id, "סכם את השיחה")

    assert result.ok
    assert result.message.type == "ai_response"
    assert result.message.sender_id is None
    assert result.message.metadata["aiModel"] == "gpt-4"
    assert "processingTime" in result.message.metadata
    assert bob.of_type("chat:message")[0]["data"]["content"] == "תשובה"


@pytest.mark.asyncio
async def test_assistant_admin_only(seeded, make_service, fake_llm):
    await crud.settings_upsert(seeded.db, "a1", ai_assistant_config=AIAssistantConfig())
    llm = fake_llm()
    service = make_service(backend=llm)

    result = await service.ask_assistant("alice", "a1", seeded.group.id, "?")

    assert result.status is RouteStatus.DENIED
    assert result.error == texts.AI_ADMIN_ONLY
    assert llm.calls == []


@pytest.mark.asyncio
async def test_assistant_switched_off_posts_nothing(seeded, make_service, fake_llm):
    service = make_service(backend=fake_llm())
    assert await service.ask_assistant("admin", "a1", seeded.group.id, "?") is None
    assert await crud.msg_list(seeded.db, seeded.group.id) == []


@pytest.mark.asyncio
async def test_support_bot_reply_is_posted(seeded, make_service):
    await crud.settings_upsert(seeded.db, "a1", bot_config=CONFIG)
    service = make_service()

    result = await service.ask_support_bot("bob", "a1", seeded.group.id, "צריך נציג")

    assert result.ok
    assert result.message.type == "bot"
    assert result.message.content == texts.BOT_TRANSFER
    assert result.message.metadata == {"botName": "דנה"}
    stored = await crud.msg_list(seeded.db, seeded.group.id)
    assert stored[-1].sender_id is None


@pytest.mark.asyncio
async def test_support_bot_requires_write_access(seeded, make_service):
    service = make_service()
    result = await service.ask_support_bot("carol", "a1", seeded.group.id, "שלום")
    assert result.status is RouteStatus.DENIED
    assert await crud.msg_list(seeded.db, seeded.group.id) == []
