"""
Unit tests for ChatService: join / leave / typing / disconnect wiring.
"""
import pytest

from agencychat.chat.router import RouteStatus
from agencychat.db import crud


@pytest.mark.asyncio
async def test_join_returns_history_and_audits(seeded, make_service):
    service = make_service()
    cid = seeded.group.id
    await service.router.send_message(cid, "alice", "earlier")

    result = await service.join("bob", "a1", cid)

    assert result.ok
    assert [m.content for m in result.messages] == ["earlier"]
    assert service.membership.is_joined("bob", cid)
    assert [e.action for e in await crud.audit_list(seeded.db, conversation_id=cid)] == ["send", "join"]


@pytest.mark.asyncio
async def test_join_denied_does_not_subscribe(seeded, make_service):
    service = make_service()
    result = await service.join("carol", "a1", seeded.group.id)
    assert result.status is RouteStatus.DENIED
    assert not service.membership.is_joined("carol", seeded.group.id)


@pytest.mark.asyncio
async def test_leave_stops_delivery_and_is_audited_once(seeded, make_service, transport_factory):
    service = make_service()
    cid = seeded.group.id
    bob = transport_factory()
    await service.connect("bob", "a1", "team_member", bob)
    await service.join("bob", "a1", cid)

    await service.leave("bob", "a1", cid)
    await service.leave("bob", "a1", cid)
    await service.router.send_message(cid, "alice", "after leave")

    assert bob.of_type("chat:message") == []
    actions = [e.action for e in await crud.audit_list(seeded.db, conversation_id=cid)]
    assert actions.count("leave") == 1


@pytest.mark.asyncio
async def test_typing_goes_to_other_joined_users(seeded, make_service, transport_factory):
    service = make_service()
    cid = seeded.group.id
    alice, bob = transport_factory(), transport_factory()
    await service.connect("alice", "a1", "team_member", alice)
    await service.connect("bob", "a1", "team_member", bob)
    await service.join("alice", "a1", cid)
    await service.join("bob", "a1", cid)

    assert await service.typing("alice", cid) == 1
    assert bob.of_type("chat:typing")[0]["data"] == {"conversationId": cid, "userId": "alice", "isTyping": True}
    assert alice.of_type("chat:typing") == []
    # not persisted
    assert await crud.msg_list(seeded.db, cid) == []


@pytest.mark.asyncio
async def test_typing_requires_join(seeded, make_service):
    service = make_service()
    assert await service.typing("carol", seeded.group.id) == 0


@pytest.mark.asyncio
async def test_disconnect_drops_membership(seeded, make_service, transport_factory):
    service = make_service()
    cid = seeded.group.id
    t = transport_factory()
    await service.connect("bob", "a1", "team_member", t)
    await service.join("bob", "a1", cid)

    await service.disconnect("bob", t)

    assert not service.registry.is_connected("bob")
    assert not service.membership.is_joined("bob", cid)


@pytest.mark.asyncio
async def test_stale_disconnect_keeps_new_connection_joined(seeded, make_service, transport_factory):
    service = make_service()
    cid = seeded.group.id
    old, new = transport_factory(), transport_factory()
    await service.connect("bob", "a1", "team_member", old)
    await service.connect("bob", "a1", "team_member", new)
    await service.join("bob", "a1", cid)

    await service.disconnect("bob", old)
    await service.router.send_message(cid, "alice", "still there?")

    assert service.membership.is_joined("bob", cid)
    assert len(new.of_type("chat:message")) == 1
    assert old.of_type("chat:message") == []
