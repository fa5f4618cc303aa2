"""Tests for fan-out across connections and server instances.

Two Broadcasters share one InMemoryHub and one presence registry, which is
how two server processes look when they share Redis.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeConnection
from relay.fanout.broadcaster import (
    EVENT_NEW_MESSAGE,
    Broadcaster,
    instance_of,
)
from relay.fanout.bus import InMemoryEventBus, InMemoryHub
from relay.presence.registry import InMemoryPresenceRegistry
from relay.store.schemas import DeliveryRecord, DeliveryState, Message


@pytest.fixture
def cluster(store):
    hub = InMemoryHub()
    presence = InMemoryPresenceRegistry()
    a = Broadcaster("inst-a", presence, InMemoryEventBus("inst-a", hub), store)
    b = Broadcaster("inst-b", presence, InMemoryEventBus("inst-b", hub), store)
    return a, b, presence


async def started(cluster):
    a, b, presence = cluster
    await a.start()
    await b.start()
    return a, b, presence


def stored_message(store, recipients):
    message = Message(
        id="m-1", chatId="chat-1", senderId="alice", text="hi",
        deliveryStatus=[DeliveryRecord(userId=r) for r in recipients],
    )
    store.append(message)
    return message


async def online(broadcaster, presence, user_id, connection_id, fail=False):
    connection = FakeConnection(broadcaster.new_handle(connection_id), user_id=user_id, fail=fail)
    broadcaster.register(connection)
    await presence.set_online(user_id, connection.handle)
    return connection


def test_handles_name_their_instance(cluster):
    a, b, _ = cluster
    handle = a.new_handle("abc")

    assert handle == "inst-a/abc"
    assert instance_of(handle) == "inst-a"
    assert a.is_local(handle)
    assert not b.is_local(handle)


class TestRooms:
    def test_join_and_leave(self, cluster):
        a, _, _ = cluster

        assert a.join_room("inst-a/1", "chat-1") is True
        assert a.join_room("inst-a/1", "chat-1") is False
        a.join_room("inst-a/1", "chat-2")
        assert a.rooms_of("inst-a/1") == {"chat-1", "chat-2"}

        a.leave_room("inst-a/1", "chat-1")
        assert a.rooms_of("inst-a/1") == {"chat-2"}

    def test_unregister_leaves_every_room(self, cluster):
        a, _, _ = cluster
        a.register(FakeConnection("inst-a/1"))
        a.join_room("inst-a/1", "chat-1")
        a.join_room("inst-a/1", "chat-2")

        a.unregister("inst-a/1")

        assert a.rooms_of("inst-a/1") == set()
        assert a.rooms == {}
        assert a.connections == {}


class TestEmission:
    @pytest.mark.asyncio
    async def test_emit_to_local_connection(self, cluster):
        a, _, presence = await started(cluster)
        bob = await online(a, presence, "bob", "1")

        assert await a.emit_to_connection(bob.handle, "ping", {"n": 1}) is True
        assert bob.frames == [("ping", {"n": 1})]

    @pytest.mark.asyncio
    async def test_emit_to_remote_connection(self, cluster):
        a, b, presence = await started(cluster)
        bob = await online(b, presence, "bob", "1")

        assert await a.emit_to_connection(bob.handle, "ping", {"n": 1}) is True
        assert bob.frames == [("ping", {"n": 1})]

    @pytest.mark.asyncio
    async def test_emit_to_unknown_local_handle(self, cluster):
        a, _, _ = await started(cluster)

        assert await a.emit_to_connection("inst-a/gone", "ping", {}) is False

    @pytest.mark.asyncio
    async def test_room_broadcast_reaches_members_on_every_instance_once(self, cluster):
        a, b, presence = await started(cluster)
        alice = await online(a, presence, "alice", "1")
        bob = await online(b, presence, "bob", "2")
        carol = await online(b, presence, "carol", "3")
        a.join_room(alice.handle, "chat-1")
        b.join_room(bob.handle, "chat-1")

        await a.broadcast_to_chat_room("chat-1", "messageUpdated", {"id": "m-1"})

        assert alice.frames == [("messageUpdated", {"id": "m-1"})]
        assert bob.frames == [("messageUpdated", {"id": "m-1"})]
        assert carol.frames == []

    @pytest.mark.asyncio
    async def test_broadcast_all(self, cluster):
        a, b, presence = await started(cluster)
        alice = await online(a, presence, "alice", "1")
        bob = await online(b, presence, "bob", "2")

        await b.broadcast_all("getOnlineUsers", ["alice", "bob"])

        assert alice.events("getOnlineUsers") == [["alice", "bob"]]
        assert bob.events("getOnlineUsers") == [["alice", "bob"]]

    @pytest.mark.asyncio
    async def test_one_failing_connection_does_not_block_others(self, cluster):
        a, _, presence = await started(cluster)
        broken = await online(a, presence, "alice", "1")
        broken.send = AsyncMock(side_effect=RuntimeError("socket gone"))
        bob = await online(a, presence, "bob", "2")
        a.join_room(broken.handle, "chat-1")
        a.join_room(bob.handle, "chat-1")

        await a.broadcast_to_chat_room("chat-1", "ping", {})

        assert bob.frames == [("ping", {})]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_reports_reached_recipients(self, cluster):
        a, b, presence = await started(cluster)
        bob = await online(b, presence, "bob", "1")
        dave = await online(a, presence, "dave", "2")
        message = Message(id="m-1", chatId="chat-1", senderId="alice", text="hi")

        reached = await a.dispatch(message, ["bob", "carol", "dave"])

        assert reached == ["dave"]
        assert [m["id"] for m in bob.events(EVENT_NEW_MESSAGE)] == ["m-1"]
        assert [m["id"] for m in dave.events(EVENT_NEW_MESSAGE)] == ["m-1"]

    @pytest.mark.asyncio
    async def test_remote_owner_promotes_after_its_send(self, cluster, store):
        a, b, presence = await started(cluster)
        bob = await online(b, presence, "bob", "1")
        message = stored_message(store, ["bob", "carol"])

        assert await a.dispatch(message, ["bob", "carol"]) == []

        assert [m["id"] for m in bob.events(EVENT_NEW_MESSAGE)] == ["m-1"]
        records = {r.userId: r.status for r in store.get_delivery_records("m-1")}
        assert records == {"bob": DeliveryState.DELIVERED, "carol": DeliveryState.SENT}

    @pytest.mark.asyncio
    async def test_stale_remote_handle_leaves_record_sent(self, cluster, store):
        a, _, presence = await started(cluster)
        await presence.set_online("bob", "dead-instance/abc")
        message = stored_message(store, ["bob"])

        assert await a.dispatch(message, ["bob"]) == []

        assert store.get_delivery_records("m-1")[0].status == DeliveryState.SENT
        assert [m.id for m in a.replay_missed("bob")] == ["m-1"]

    @pytest.mark.asyncio
    async def test_remote_owner_without_handle_leaves_record_sent(self, cluster, store):
        a, _, presence = await started(cluster)
        await presence.set_online("bob", "inst-b/gone")
        message = stored_message(store, ["bob"])

        await a.dispatch(message, ["bob"])

        assert store.get_delivery_records("m-1")[0].status == DeliveryState.SENT

    @pytest.mark.asyncio
    async def test_failed_remote_send_leaves_record_sent(self, cluster, store):
        a, b, presence = await started(cluster)
        await online(b, presence, "bob", "1", fail=True)
        message = stored_message(store, ["bob"])

        await a.dispatch(message, ["bob"])

        assert store.get_delivery_records("m-1")[0].status == DeliveryState.SENT

    @pytest.mark.asyncio
    async def test_dispatch_skips_failed_local_send(self, cluster):
        a, _, presence = await started(cluster)
        await online(a, presence, "bob", "1", fail=True)
        message = Message(id="m-1", chatId="chat-1", senderId="alice", text="hi")

        assert await a.dispatch(message, ["bob"]) == []

    @pytest.mark.asyncio
    async def test_presence_failure_counts_as_offline(self, store):
        presence = MagicMock()
        presence.lookup = AsyncMock(side_effect=ConnectionError("redis down"))
        broadcaster = Broadcaster("inst-a", presence, InMemoryEventBus("inst-a"), store)
        message = Message(id="m-1", chatId="chat-1", senderId="alice", text="hi")

        assert await broadcaster.dispatch(message, ["bob"]) == []

    @pytest.mark.asyncio
    async def test_dispatch_without_recipients(self, cluster):
        a, _, _ = await started(cluster)
        message = Message(id="m-1", chatId="chat-1", senderId="alice", text="hi")

        assert await a.dispatch(message, []) == []
