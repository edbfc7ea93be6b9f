"""
Unit tests for the connection registry and presence broadcasts.
"""
import pytest

from agencychat.chat.registry import ConnectionRegistry


@pytest.mark.asyncio
async def test_register_and_lookup(transport_factory):
    registry = ConnectionRegistry()
    t = transport_factory()

    session = await registry.register("alice", "a1", "team_member", t)

    assert registry.get("alice") is t
    assert registry.session("alice") is session
    assert registry.is_connected("alice")
    assert len(registry) == 1
    assert registry.get("nobody") is None


@pytest.mark.asyncio
async def test_online_offline_reach_same_agency_only(transport_factory):
    registry = ConnectionRegistry()
    bob, eve = transport_factory(), transport_factory()
    await registry.register("bob", "a1", "team_member", bob)
    await registry.register("eve", "a2", "agency_admin", eve)

    alice = transport_factory()
    await registry.register("alice", "a1", "team_member", alice)
    await registry.unregister("alice", alice)

    statuses = [(e["data"]["userId"], e["data"]["status"]) for e in bob.of_type("chat:presence")]
    assert statuses == [("alice", "online"), ("alice", "offline")]
    assert eve.of_type("chat:presence") == []
    # no echo to the user themselves
    assert all(e["data"]["userId"] != "alice" for e in alice.of_type("chat:presence"))
    assert "timestamp" in bob.sent[0]["data"]


@pytest.mark.asyncio
async def test_second_connection_replaces_first(transport_factory):
    registry = ConnectionRegistry()
    first, second = transport_factory(), transport_factory()
    await registry.register("alice", "a1", "team_member", first)
    await registry.register("alice", "a1", "team_member", second)

    assert registry.get("alice") is second
    assert len(registry) == 1
    # replaced socket is not closed
    assert first.is_open


@pytest.mark.asyncio
async def test_stale_unregister_keeps_newer_session(transport_factory):
    registry = ConnectionRegistry()
    first, second = transport_factory(), transport_factory()
    await registry.register("alice", "a1", "team_member", first)
    await registry.register("alice", "a1", "team_member", second)

    assert await registry.unregister("alice", first) is False
    assert registry.get("alice") is second

    assert await registry.unregister("alice", second) is True
    assert not registry.is_connected("alice")


@pytest.mark.asyncio
async def test_unregister_unknown_user_is_noop(transport_factory):
    registry = ConnectionRegistry()
    assert await registry.unregister("ghost") is False


@pytest.mark.asyncio
async def test_closed_and_broken_peers_skipped(transport_factory):
    registry = ConnectionRegistry()
    closed, broken, healthy = transport_factory(), transport_factory(fail=True), transport_factory()
    closed.is_open = False
    await registry.register("bob", "a1", "team_member", closed)
    await registry.register("dave", "a1", "team_member", broken)
    await registry.register("carol", "a1", "client", healthy)

    delivered = await registry.presence.broadcast("alice", "a1", "online")

    assert delivered == 1
    assert closed.sent == []
    assert healthy.of_type("chat:presence")[-1]["data"]["userId"] == "alice"


@pytest.mark.asyncio
async def test_touch_updates_last_seen(transport_factory):
    registry = ConnectionRegistry()
    session = await registry.register("alice", "a1", "team_member", transport_factory())
    before = session.last_seen
    registry.touch("alice")
    assert registry.session("alice").last_seen >= before
    registry.touch("ghost")


@pytest.mark.asyncio
async def test_sessions_for_agency(transport_factory):
    registry = ConnectionRegistry()
    await registry.register("alice", "a1", "team_member", transport_factory())
    await registry.register("bob", "a1", "team_member", transport_factory())
    await registry.register("eve", "a2", "agency_admin", transport_factory())

    assert sorted(s.user_id for s in registry.sessions_for_agency("a1")) == ["alice", "bob"]
    assert registry.sessions_for_agency("a3") == []
