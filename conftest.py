"""
Shared fixtures for AgencyChat unit and WebSocket tests.

Every test gets its own in-memory database and its own ChatService, so the
in-memory registries never leak between tests.
"""
import os
from types import SimpleNamespace

# Must be set before agencychat.config is imported
os.environ["AGENCYCHAT_DB"] = ":memory:"
os.environ["AGENCYCHAT_RATE_LIMIT_SWEEP_INTERVAL"] = "0"
os.environ["OPENAI_API_KEY"] = ""

import pytest
import pytest_asyncio

from agencychat.chat.service import ChatService
from agencychat.db import crud
from agencychat.db.database import connect


class FakeTransport:
    """Records pushed envelopes; can be closed or made to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.is_open = True
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.sent if e["type"] == event_type]


class FakeLLM:
    def __init__(self, reply: str = "הנה הצעה מעשית", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []

    async def complete(self, **kwargs) -> str:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest_asyncio.fixture
async def db():
    conn = await connect(":memory:")
    try:
        yield conn
    finally:
        await conn.close()


@pytest_asyncio.fixture
async def seeded(db):
    """Agency a1 with an admin, three members and an outsider client; agency a2 with one member.

    Conversation `group` has participants alice, bob and dave.
    """
    await crud.user_upsert(db, "admin", "a1", "agency_admin")
    await crud.user_upsert(db, "alice", "a1", "team_member")
    await crud.user_upsert(db, "bob", "a1", "team_member")
    await crud.user_upsert(db, "dave", "a1", "team_member")
    await crud.user_upsert(db, "carol", "a1", "client")
    await crud.user_upsert(db, "eve", "a2", "agency_admin")
    group = await crud.conversation_create(db, "a1", "group", "alice", participants=["bob", "dave"],
                                           title="Launch")
    return SimpleNamespace(db=db, group=group)


@pytest.fixture
def make_service(db):
    def _make(**kwargs) -> ChatService:
        return ChatService(db, **kwargs)
    return _make


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def fake_llm():
    return FakeLLM
