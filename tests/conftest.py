from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")

from room_manager import RoomManager  # noqa: E402
from store import MemoryStore  # noqa: E402


class FakeSocket:
    """Stands in for a WebSocket; records every frame sent to it."""

    def __init__(self):
        self.sent = []

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def events(self, event_type: str) -> list:
        return [m for m in self.sent if m["type"] == event_type]

    def last(self, event_type: str) -> dict:
        matching = self.events(event_type)
        assert matching, f"no {event_type} frame received"
        return matching[-1]

    def clear(self) -> None:
        self.sent.clear()


class FlakyStore(MemoryStore):
    """MemoryStore whose next `failures` writes raise."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.writes = 0

    async def set(self, key, value):
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        self.writes += 1
        await super().set(key, value)


def make_manager(store=None, **overrides) -> RoomManager:
    options = {
        "save_interval": 0.05,
        "code_interval": 0.05,
        "typing_timeout": 0.1,
        "cursor_interval": 0.02,
    }
    options.update(overrides)
    return RoomManager(store if store is not None else MemoryStore(), **options)


async def connect(manager: RoomManager, room_key: str, identity: str, connection_id: str | None = None):
    """Join like the WebSocket endpoint does; returns (socket, connection_id)."""
    socket = FakeSocket()
    connection_id = connection_id or f"{identity}-conn"
    await manager.join(room_key, identity, connection_id=connection_id, websocket=socket)
    return socket, connection_id


@pytest.fixture
def store():
    return MemoryStore()
