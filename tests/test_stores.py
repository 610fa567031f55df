from __future__ import annotations

import asyncio
import json

import pytest

from database import SQLiteStore
from store import JsonFileStore, MemoryStore, StoreError, build_store


@pytest.fixture(params=["memory", "file", "sqlite"])
def durable_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    if request.param == "file":
        return JsonFileStore(tmp_path / "data.json")
    return SQLiteStore(tmp_path / "rooms.db")


def test_store_contract(durable_store) -> None:
    async def scenario():
        await durable_store.init()
        assert await durable_store.get("room:a") is None
        await durable_store.set("room:a", "1")
        await durable_store.set("room:a", "2")
        await durable_store.set("room:b_%", "3")
        await durable_store.set("share:X", "4")
        value = await durable_store.get("room:a")
        rooms = sorted(await durable_store.keys("room:"))
        everything = sorted(await durable_store.keys())
        await durable_store.delete("room:a")
        await durable_store.delete("room:missing")
        after_delete = await durable_store.get("room:a")
        await durable_store.close()
        return value, rooms, everything, after_delete

    value, rooms, everything, after_delete = asyncio.run(scenario())
    assert value == "2"
    assert rooms == ["room:a", "room:b_%"]
    assert everything == ["room:a", "room:b_%", "share:X"]
    assert after_delete is None


def test_sqlite_store_persists_across_instances(tmp_path) -> None:
    path = tmp_path / "nested" / "rooms.db"

    async def scenario():
        first = SQLiteStore(path)
        await first.init()
        await first.set("room:demo", json.dumps({"key": "demo"}))
        second = SQLiteStore(path)
        await second.init()
        return await second.get("room:demo")

    assert json.loads(asyncio.run(scenario())) == {"key": "demo"}


def test_json_file_store_persists_across_instances(tmp_path) -> None:
    path = tmp_path / "data.json"

    async def scenario():
        await JsonFileStore(path).set("room:demo", "payload")
        return await JsonFileStore(path).get("room:demo")

    assert asyncio.run(scenario()) == "payload"
    assert json.loads(path.read_text()) == {"room:demo": "payload"}


def test_json_file_store_reports_corrupt_file(tmp_path) -> None:
    path = tmp_path / "data.json"
    path.write_text("{not json")

    with pytest.raises(StoreError):
        asyncio.run(JsonFileStore(path).get("room:demo"))


def test_build_store_by_name() -> None:
    assert isinstance(build_store("memory"), MemoryStore)
    assert isinstance(build_store("sqlite"), SQLiteStore)
    assert isinstance(build_store("file"), JsonFileStore)
    with pytest.raises(ValueError):
        build_store("redis")
