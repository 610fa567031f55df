from __future__ import annotations

import asyncio

from conftest import FakeSocket, connect, make_manager
from room_models import parse_event
from room_store import DEFAULT_CODE


def test_join_is_idempotent_and_keeps_host() -> None:
    async def scenario():
        manager = make_manager()
        await manager.join("demo", "alice")
        await manager.join("demo", "bob")
        snapshot = await manager.join("demo", "alice")
        return snapshot

    snapshot = asyncio.run(scenario())
    assert snapshot.members == ["alice", "bob"]
    assert snapshot.host == "alice"


def test_first_member_becomes_host_and_gets_sync_snapshot() -> None:
    async def scenario():
        manager = make_manager()
        socket, _ = await connect(manager, "demo", "alice")
        return socket

    socket = asyncio.run(scenario())
    assert socket.sent[0]["type"] == "sync-snapshot"
    snapshot = socket.sent[0]
    assert snapshot["room_key"] == "demo"
    assert snapshot["members"] == ["alice"]
    assert snapshot["host"] == "alice"
    assert snapshot["code"] == {}
    assert snapshot["chat"] == [] and snapshot["commits"] == []
    assert socket.last("member-list")["members"] == ["alice"]
    assert socket.last("owner-changed")["host"] == "alice"


def test_sync_snapshot_only_goes_to_joining_connection() -> None:
    async def scenario():
        manager = make_manager()
        alice, _ = await connect(manager, "demo", "alice")
        alice.clear()
        await connect(manager, "demo", "bob")
        return alice

    alice = asyncio.run(scenario())
    assert alice.events("sync-snapshot") == []
    assert alice.last("member-list")["members"] == ["alice", "bob"]


def test_host_succession_and_room_survives_vacancy() -> None:
    async def scenario():
        manager = make_manager()
        for name in ("a", "b", "c"):
            await manager.join("demo", name)
        await manager.leave("demo", "a")
        after_first = manager.rooms.cached("demo")
        host_after_first = after_first.host
        await manager.leave("demo", "b")
        await manager.leave("demo", "c")
        return host_after_first, manager.rooms.cached("demo")

    host_after_first, room = asyncio.run(scenario())
    assert host_after_first == "b"
    assert room is not None
    assert room.members == []
    assert room.host is None


def test_leave_by_non_host_keeps_host() -> None:
    async def scenario():
        manager = make_manager()
        await manager.join("demo", "a")
        await manager.join("demo", "b")
        await manager.leave("demo", "b")
        return manager.rooms.cached("demo")

    room = asyncio.run(scenario())
    assert room.host == "a"
    assert room.members == ["a"]


def test_disconnect_keeps_identity_with_another_open_connection() -> None:
    async def scenario():
        manager = make_manager()
        await connect(manager, "demo", "alice", "tab-1")
        await connect(manager, "demo", "alice", "tab-2")
        await manager.disconnect("tab-1")
        still_there = list(manager.rooms.cached("demo").members)
        await manager.disconnect("tab-2")
        return still_there, list(manager.rooms.cached("demo").members)

    still_there, after = asyncio.run(scenario())
    assert still_there == ["alice"]
    assert after == []


def test_disconnect_of_unknown_connection_is_noop() -> None:
    manager = make_manager()
    assert asyncio.run(manager.disconnect("nope")) is False


def test_chat_is_bounded_to_most_recent_messages() -> None:
    async def scenario():
        manager = make_manager()
        await manager.join("demo", "alice")
        for i in range(1, 151):
            await manager.send_message("demo", "alice", f"message {i}")
        return manager.rooms.cached("demo").chat_log

    chat_log = asyncio.run(scenario())
    assert len(chat_log) == 100
    assert [m.message for m in chat_log] == [f"message {i}" for i in range(51, 151)]


def test_chat_message_is_escaped_and_broadcast() -> None:
    async def scenario():
        manager = make_manager()
        alice, _ = await connect(manager, "demo", "alice")
        bob, _ = await connect(manager, "demo", "bob")
        await manager.send_message("demo", "alice", "<b>hi</b>")
        await manager.send_message("demo", "alice", "   ")
        return alice, bob

    alice, bob = asyncio.run(scenario())
    for socket in (alice, bob):
        messages = socket.events("chat-message")
        assert len(messages) == 1
        assert messages[0]["identity"] == "alice"
        assert messages[0]["message"] == "&lt;b&gt;hi&lt;/b&gt;"
        assert messages[0]["timestamp"]


def test_mutations_on_unknown_room_are_ignored() -> None:
    async def scenario():
        manager = make_manager()
        results = [
            await manager.code_sync.update_code("ghost", "python", "print(1)", "alice"),
            await manager.send_message("ghost", "alice", "hello"),
            await manager.ledger.commit("ghost", "python", "x", "msg", "alice"),
            await manager.presence.set_typing("ghost", "alice"),
            await manager.leave("ghost", "alice"),
        ]
        await asyncio.sleep(0.1)
        return manager, results

    manager, results = asyncio.run(scenario())
    assert results == [False, None, None, False, False]
    assert "ghost" not in manager.rooms
    assert manager.store.data == {}


def test_handle_event_routes_typed_events() -> None:
    async def scenario():
        manager = make_manager()
        alice, conn = await connect(manager, "demo", "alice")
        await manager.handle_event(parse_event({
            "type": "send-message", "room_key": "demo", "identity": "alice",
            "message": "hello", "connection_id": conn,
        }))
        await manager.handle_event(parse_event({
            "type": "language-update", "room_key": "demo", "language": "rust",
            "connection_id": conn,
        }))
        await manager.handle_event(parse_event({
            "type": "get-commit-history", "room_key": "demo", "connection_id": conn,
        }))
        await manager.handle_event(parse_event({
            "type": "leave", "room_key": "demo", "identity": "alice", "connection_id": conn,
        }))
        return manager, alice

    manager, alice = asyncio.run(scenario())
    assert alice.last("chat-message")["message"] == "hello"
    assert alice.last("language-update") == {"type": "language-update", "language": "rust", "content": DEFAULT_CODE}
    assert alice.last("commit-list")["commits"] == []
    assert manager.rooms.cached("demo").members == []
    assert manager.dispatcher.connection_count == 0


def test_handle_event_reports_internal_errors_to_sender() -> None:
    async def scenario():
        manager = make_manager()
        alice, conn = await connect(manager, "demo", "alice")

        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        manager.send_message = broken
        await manager.handle_event(parse_event({
            "type": "send-message", "room_key": "demo", "identity": "alice",
            "message": "hello", "connection_id": conn,
        }))
        return alice

    alice = asyncio.run(scenario())
    assert alice.last("error")["message"] == "Internal error"


def test_share_links_over_events() -> None:
    async def scenario():
        manager = make_manager()
        alice, conn = await connect(manager, "demo", "alice")
        await manager.handle_event(parse_event({
            "type": "generate-share-link", "room_key": "demo", "content": "fn main() {}",
            "connection_id": conn,
        }))
        share_id = alice.last("share-link")["share_id"]
        await manager.handle_event(parse_event({
            "type": "load-shared-code", "room_key": "demo", "share_id": share_id,
            "connection_id": conn,
        }))
        await manager.handle_event(parse_event({
            "type": "load-shared-code", "room_key": "demo", "share_id": "NOPE-NOPE",
            "connection_id": conn,
        }))
        return alice, share_id

    alice, share_id = asyncio.run(scenario())
    assert alice.last("share-link")["url"].endswith(share_id)
    assert alice.last("shared-code-loaded")["content"] == "fn main() {}"
    assert alice.last("shared-code-error")["message"] == "Shared code not found!"


def test_close_flushes_pending_code_and_dirty_rooms() -> None:
    async def scenario():
        manager = make_manager(save_interval=60, code_interval=60)
        await manager.join("demo", "alice")
        await manager.code_sync.update_code("demo", "python", "print('bye')", "alice")
        await manager.close()
        return manager

    manager = asyncio.run(scenario())
    reloaded = asyncio.run(manager.rooms.load("demo"))
    assert reloaded.code_by_language == {"python": "print('bye')"}


def test_stale_members_are_dropped_when_room_is_reloaded() -> None:
    async def scenario():
        first = make_manager()
        await first.join("demo", "alice")
        await first.join("demo", "bob")
        await first.rooms.flush_all()

        # A new process over the same store has no live connections
        second = make_manager(first.store)
        socket = FakeSocket()
        snapshot = await second.join("demo", "carol", connection_id="c1", websocket=socket)
        return snapshot

    snapshot = asyncio.run(scenario())
    assert snapshot.members == ["carol"]
    assert snapshot.host == "carol"
