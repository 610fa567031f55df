from __future__ import annotations

import asyncio
import gc
import json
import time

from conftest import FlakyStore, connect, make_manager
from room_store import Room, RoomStore
from scheduler import KeyedTimers
from store import MemoryStore, StoreError
import store_keys


def test_state_survives_restart_byte_for_byte() -> None:
    async def scenario():
        store = MemoryStore()
        manager = make_manager(store)
        _, conn = await connect(manager, "demo", "alice")
        await manager.join("demo", "bob")
        await manager.code_sync.update_code("demo", "python", "print('hi')", "alice", conn)
        await asyncio.sleep(0.1)
        await manager.ledger.commit("demo", "python", "print('hi')", "greeting", "alice")
        await manager.send_message("demo", "bob", "nice")
        await manager.rooms.flush_all()
        original = manager.rooms.cached("demo").to_dict()

        # Fresh store front, as after a process restart
        reloaded = await RoomStore(store, KeyedTimers()).load("demo")
        return original, reloaded

    original, reloaded = asyncio.run(scenario())
    assert reloaded is not None
    assert reloaded.to_dict() == original
    assert json.dumps(reloaded.to_dict()) == json.dumps(original)
    assert reloaded.members == ["alice", "bob"]
    assert reloaded.host == "alice"
    assert reloaded.commit_log[0].message == "greeting"


def test_get_or_create_is_single_instance_under_concurrency() -> None:
    async def scenario():
        rooms = RoomStore(MemoryStore(), KeyedTimers())
        results = await asyncio.gather(*(rooms.get_or_create("demo") for _ in range(20)))
        return rooms, results

    rooms, results = asyncio.run(scenario())
    assert all(room is results[0] for room in results)
    assert len(rooms) == 1


def test_get_or_create_loads_existing_record() -> None:
    async def scenario():
        store = MemoryStore()
        saved = Room(key="demo", members=["a"], host="a", code_by_language={"go": "package main"})
        await store.set(store_keys.ROOM_KEY.format(room_key="demo"), json.dumps(saved.to_dict()))
        rooms = RoomStore(store, KeyedTimers())
        return saved, await rooms.get_or_create("demo")

    saved, room = asyncio.run(scenario())
    assert room == saved


def test_bursts_of_mutations_coalesce_into_one_write() -> None:
    async def scenario():
        store = FlakyStore(failures=0)
        manager = make_manager(store, save_interval=0.05)
        await manager.join("demo", "alice")
        for i in range(20):
            await manager.send_message("demo", "alice", f"m{i}")
        writes_before = store.writes
        await asyncio.sleep(0.12)
        return writes_before, store.writes, manager

    writes_before, writes_after, manager = asyncio.run(scenario())
    assert writes_before == 0
    assert writes_after == 1
    assert not manager.rooms.is_dirty("demo")


def test_failed_write_is_retried_and_memory_stays_authoritative() -> None:
    async def scenario():
        store = FlakyStore(failures=1)
        manager = make_manager(store, save_interval=0.05)
        bob, _ = await connect(manager, "demo", "bob")
        await manager.send_message("demo", "bob", "still here")
        # First write fails at ~0.05s, the retry lands at ~0.10s
        await asyncio.sleep(0.07)
        dirty_after_failure = manager.rooms.is_dirty("demo")
        await asyncio.sleep(0.1)
        return store, bob, dirty_after_failure, manager

    store, bob, dirty_after_failure, manager = asyncio.run(scenario())
    assert bob.last("chat-message")["message"] == "still here"
    assert dirty_after_failure is True
    assert not manager.rooms.is_dirty("demo")
    record = json.loads(store.data[store_keys.ROOM_KEY.format(room_key="demo")])
    assert record["chat_log"][0]["message"] == "still here"


def test_backup_writes_every_cached_room() -> None:
    async def scenario():
        manager = make_manager()
        await manager.join("one", "a")
        await manager.join("two", "b")
        count = await manager.rooms.backup()
        return count, manager.store

    count, store = asyncio.run(scenario())
    assert count == 2
    backup = json.loads(store.data[store_keys.BACKUP_KEY])
    assert sorted(backup["rooms"]) == ["one", "two"]
    assert backup["rooms"]["one"]["host"] == "a"


def test_purge_removes_only_empty_idle_rooms() -> None:
    async def scenario():
        store = MemoryStore()
        # Stored but never loaded since "restart"
        old = Room(key="stale", last_active=time.time() - 1000)
        await store.set(store_keys.ROOM_KEY.format(room_key="stale"), json.dumps(old.to_dict()))

        manager = make_manager(store)
        await manager.join("busy", "alice")
        await manager.join("quiet", "bob")
        await manager.leave("quiet", "bob")
        await manager.rooms.flush_all()
        manager.rooms.cached("quiet").last_active = time.time() - 1000
        manager.rooms.cached("busy").last_active = time.time() - 1000

        purged = await manager.rooms.purge_inactive(500)
        return purged, manager, store

    purged, manager, store = asyncio.run(scenario())
    assert purged == 2
    assert "busy" in manager.rooms
    assert "quiet" not in manager.rooms
    assert sorted(store.data) == [store_keys.ROOM_KEY.format(room_key="busy")]


def test_purge_disabled_with_zero_age() -> None:
    rooms = RoomStore(MemoryStore(), KeyedTimers())
    assert asyncio.run(rooms.purge_inactive(0)) == 0


def test_purge_ignores_stored_members_without_live_connections() -> None:
    async def scenario():
        store = MemoryStore()
        # Saved while alice was connected, then the process died
        ghost = Room(key="ghost", members=["alice"], host="alice", last_active=time.time() - 10_000)
        await store.set(store_keys.ROOM_KEY.format(room_key="ghost"), json.dumps(ghost.to_dict()))

        manager = make_manager(store)
        purged = await manager.rooms.purge_inactive(60)
        return purged, store

    purged, store = asyncio.run(scenario())
    assert purged == 1
    assert store_keys.ROOM_KEY.format(room_key="ghost") not in store.data


def test_corrupt_record_is_reported_as_store_error() -> None:
    async def scenario():
        store = MemoryStore()
        store.data[store_keys.ROOM_KEY.format(room_key="bad")] = "{not json"
        store.data[store_keys.ROOM_KEY.format(room_key="partial")] = json.dumps({"members": []})
        rooms = RoomStore(store, KeyedTimers())
        errors = []
        for key in ("bad", "partial"):
            try:
                await rooms.get_or_create(key)
            except StoreError:
                errors.append(key)
        return errors, await rooms.purge_inactive(60)

    errors, purged = asyncio.run(scenario())
    assert errors == ["bad", "partial"]
    assert purged == 0


def test_lookups_leave_no_locks_behind() -> None:
    async def scenario():
        rooms = RoomStore(MemoryStore(), KeyedTimers())
        for i in range(1000):
            async with rooms.locked(f"nope{i}") as room:
                assert room is None
        await rooms.get_or_create("kept")
        await rooms.delete("kept")
        return rooms

    rooms = asyncio.run(scenario())
    gc.collect()
    assert len(rooms._locks) == 0
    assert len(rooms._persist_locks) == 0
