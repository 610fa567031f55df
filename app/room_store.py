"""
Room State Store - authoritative in-memory room table.

Each room key has its own asyncio.Lock; every read-modify-broadcast of a
room happens inside it. Mutations mark the room dirty and arm a save timer,
so the durable write happens later and off the broadcast path.
"""
import asyncio
import json
import logging
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

import settings
import store_keys
from scheduler import KeyedTimers
from store import DurableStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_CODE = "// Start coding..."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    identity: str
    message: str
    timestamp: str


@dataclass(frozen=True)
class Commit:
    """Immutable snapshot of one language buffer."""
    id: str
    created_at: str
    author: Optional[str]
    language: str
    message: str
    content: str

    def summary(self) -> dict:
        return {
            "id": self.id,
            "message": self.message,
            "language": self.language,
            "author": self.author,
            "created_at": self.created_at,
        }


@dataclass
class Cursor:
    line: int
    column: int
    updated_at: float


@dataclass
class Room:
    """Represents a single collaborative room."""
    key: str
    members: List[str] = field(default_factory=list)
    host: Optional[str] = None
    code_by_language: Dict[str, str] = field(default_factory=dict)
    chat_log: List[ChatMessage] = field(default_factory=list)
    commit_log: List[Commit] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: utc_now().isoformat())
    last_active: float = field(default_factory=time.time)
    # Transient, never persisted
    typing: Set[str] = field(default_factory=set, compare=False)
    cursors: Dict[str, Dict[str, Cursor]] = field(default_factory=dict, compare=False)
    version: int = field(default=0, compare=False)

    @property
    def user_count(self) -> int:
        return len(self.members)

    @property
    def is_empty(self) -> bool:
        return not self.members

    def code_for(self, language: str) -> str:
        return self.code_by_language.get(language, DEFAULT_CODE)

    def commit_summaries(self) -> List[dict]:
        return [commit.summary() for commit in self.commit_log]

    def find_commit(self, commit_id: str) -> Optional[Commit]:
        return next((c for c in self.commit_log if c.id == commit_id), None)

    def touch(self):
        self.last_active = time.time()

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "members": list(self.members),
            "host": self.host,
            "code_by_language": dict(self.code_by_language),
            "chat_log": [asdict(m) for m in self.chat_log],
            "commit_log": [asdict(c) for c in self.commit_log],
            "created_at": self.created_at,
            "last_active": self.last_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Room":
        return cls(
            key=data["key"],
            members=list(data.get("members", [])),
            host=data.get("host"),
            code_by_language=dict(data.get("code_by_language", {})),
            chat_log=[ChatMessage(**m) for m in data.get("chat_log", [])],
            commit_log=[Commit(**c) for c in data.get("commit_log", [])],
            created_at=data.get("created_at") or utc_now().isoformat(),
            last_active=data.get("last_active", time.time()),
        )


@dataclass
class RoomSnapshot:
    """Full state handed to a newly joined connection."""
    room_key: str
    members: List[str]
    host: Optional[str]
    code: Dict[str, str]
    chat: List[dict]
    commits: List[dict]
    typing: List[str]
    cursors: Dict[str, Dict[str, dict]]

    def to_dict(self) -> dict:
        return asdict(self)


class RoomStore:
    """
    Lazily loaded table of rooms backed by a DurableStore.
    """

    def __init__(
        self,
        store: DurableStore,
        timers: KeyedTimers,
        *,
        save_interval: float = settings.SAVE_INTERVAL,
        on_load: Optional[Callable[[Room], None]] = None,
        live_members: Optional[Callable[[Room], List[str]]] = None,
    ):
        self.store = store
        self.save_interval = save_interval
        self._timers = timers
        self._rooms: Dict[str, Room] = {}
        # A lock lives only while someone holds or waits on it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._persist_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._persisted: Dict[str, int] = {}
        self._on_load = on_load
        self._live_members = live_members

    def __len__(self):
        return len(self._rooms)

    def __contains__(self, room_key: str) -> bool:
        return room_key in self._rooms

    def keys(self) -> List[str]:
        return list(self._rooms)

    def cached(self, room_key: str) -> Optional[Room]:
        return self._rooms.get(room_key)

    def lock(self, room_key: str) -> asyncio.Lock:
        return self._locks.setdefault(room_key, asyncio.Lock())

    def persist_lock(self, room_key: str) -> asyncio.Lock:
        return self._persist_locks.setdefault(room_key, asyncio.Lock())

    def is_dirty(self, room_key: str) -> bool:
        room = self._rooms.get(room_key)
        return room is not None and room.version != self._persisted.get(room_key)

    async def load(self, room_key: str) -> Optional[Room]:
        """Read a room record straight from the durable store."""
        try:
            record = await self.store.get(store_keys.ROOM_KEY.format(room_key=room_key))
            if record is None:
                return None
            return Room.from_dict(json.loads(record))
        except Exception as e:
            logger.error(f"Failed to load room {room_key}: {e}", exc_info=True)
            raise StoreError(f"Room {room_key} unavailable") from e

    async def _resolve(self, room_key: str, create: bool) -> Optional[Room]:
        room = self._rooms.get(room_key)
        if room is not None:
            return room

        room = await self.load(room_key)
        if room is not None:
            logger.info(f"Loaded room {room_key} from durable store")
            self._persisted[room_key] = room.version
            self._rooms[room_key] = room
            if self._on_load:
                self._on_load(room)
            return room

        if not create:
            return None
        room = Room(key=room_key)
        self._persisted[room_key] = room.version
        self._rooms[room_key] = room
        logger.info(f"Created room {room_key}")
        return room

    @asynccontextmanager
    async def locked(self, room_key: str, create: bool = False):
        """Hold the room's lock; yields the Room, or None if it does not exist."""
        async with self.lock(room_key):
            yield await self._resolve(room_key, create)

    async def get_or_create(self, room_key: str) -> Room:
        async with self.locked(room_key, create=True) as room:
            return room

    def mark_dirty(self, room: Room):
        """Record a mutation and arm the save timer (call with the lock held)."""
        room.version += 1
        room.touch()
        self._timers.schedule_once(("save", room.key), self.save_interval, self.flush, room.key)

    async def flush(self, room_key: str) -> bool:
        """Write the room to the durable store if it changed since the last write."""
        async with self.persist_lock(room_key):
            async with self.lock(room_key):
                room = self._rooms.get(room_key)
                if room is None or room.version == self._persisted.get(room_key):
                    return False
                version = room.version
                record = json.dumps(room.to_dict())

            try:
                await self.store.set(store_keys.ROOM_KEY.format(room_key=room_key), record)
            except Exception as e:
                logger.error(f"Failed to persist room {room_key}, retrying: {e}", exc_info=True)
                self._timers.schedule_once(("save", room_key), self.save_interval, self.flush, room_key)
                return False

            self._persisted[room_key] = version
            logger.debug(f"Persisted room {room_key} at version {version}")
            return True

    async def flush_all(self) -> int:
        results = await asyncio.gather(
            *(self.flush(key) for key in list(self._rooms)), return_exceptions=True
        )
        return sum(1 for r in results if r is True)

    async def backup(self) -> int:
        """Write every cached room into one backup record."""
        rooms = {}
        for key in list(self._rooms):
            async with self.lock(key):
                room = self._rooms.get(key)
                if room is not None:
                    rooms[key] = room.to_dict()
        payload = {"created_at": utc_now().isoformat(), "rooms": rooms}
        await self.store.set(store_keys.BACKUP_KEY, json.dumps(payload))
        logger.info(f"Backed up {len(rooms)} rooms")
        return len(rooms)

    async def _drop_locked(self, room_key: str):
        self._rooms.pop(room_key, None)
        self._persisted.pop(room_key, None)
        self._timers.cancel_room(room_key)
        await self.store.delete(store_keys.ROOM_KEY.format(room_key=room_key))
        logger.info(f"Deleted room {room_key}")

    async def delete(self, room_key: str):
        """Drop a room from memory and from the durable store."""
        async with self.persist_lock(room_key):
            async with self.lock(room_key):
                await self._drop_locked(room_key)

    async def _purge_if_idle(self, room_key: str, cutoff: float) -> bool:
        async with self.persist_lock(room_key):
            async with self.lock(room_key):
                room = self._rooms.get(room_key)
                if room is None:
                    room = await self.load(room_key)
                    if room is not None:
                        # A stored member list is only as fresh as its last save
                        room.members = self._live_members(room) if self._live_members else []
                if room is None or not room.is_empty or room.last_active >= cutoff:
                    return False
                await self._drop_locked(room_key)
                return True

    async def purge_inactive(self, max_age: float, now: Optional[float] = None) -> int:
        """
        Delete rooms that are empty and idle for longer than max_age seconds.

        Rooms only present in the durable store (not loaded since start) are
        checked too.
        """
        if max_age <= 0:
            return 0
        cutoff = (now or time.time()) - max_age
        keys = {k[len(store_keys.ROOM_PREFIX):] for k in await self.store.keys(store_keys.ROOM_PREFIX)}
        keys.update(self._rooms)

        purged = 0
        for room_key in sorted(keys):
            try:
                if await self._purge_if_idle(room_key, cutoff):
                    purged += 1
            except StoreError as e:
                logger.warning(f"Skipping unreadable room record {room_key}: {e}")
        return purged
