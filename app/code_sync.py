"""
Code synchronization engine.

Updates to one (room, language) buffer are coalesced: the first update arms
a timer, later ones only replace the pending value, and when the timer fires
the newest value is applied, persisted and broadcast once. The final
keystroke state is therefore never dropped. Concurrent senders on the same
buffer resolve as last-applied-wins.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import settings
from dispatcher import Dispatcher
from room_models import CODE_UPDATE
from room_store import DEFAULT_CODE, Room, RoomStore
from scheduler import KeyedTimers

logger = logging.getLogger(__name__)


@dataclass
class PendingUpdate:
    content: str
    sender: Optional[str]
    connection_id: Optional[str]


class CodeSync:
    def __init__(
        self,
        rooms: RoomStore,
        dispatcher: Dispatcher,
        timers: KeyedTimers,
        *,
        interval: float = settings.CODE_UPDATE_INTERVAL,
    ):
        self.rooms = rooms
        self.dispatcher = dispatcher
        self.interval = interval
        self._timers = timers
        self._pending: Dict[Tuple[str, str], PendingUpdate] = {}

    async def update_code(
        self,
        room_key: str,
        language: str,
        content: str,
        sender: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> bool:
        """Queue a buffer update; returns False when the room does not exist."""
        async with self.rooms.locked(room_key) as room:
            if room is None:
                logger.debug(f"Ignoring code-update for unknown room {room_key}")
                return False
            self._pending[(room_key, language)] = PendingUpdate(content, sender, connection_id)
            self._timers.schedule_once(
                ("code", room_key, language), self.interval, self.flush, room_key, language
            )
            return True

    async def flush(self, room_key: str, language: str):
        async with self.rooms.locked(room_key) as room:
            if room is None:
                self._pending.pop((room_key, language), None)
                return
            await self._apply_locked(room, language)

    async def _apply_locked(self, room: Room, language: str) -> bool:
        update = self._pending.pop((room.key, language), None)
        if update is None:
            return False
        room.code_by_language[language] = update.content
        self.rooms.mark_dirty(room)
        await self.dispatcher.broadcast(
            room.key, CODE_UPDATE, {"language": language, "content": update.content},
            exclude_connection=update.connection_id,
            exclude_identity=update.sender if update.connection_id is None else None,
        )
        return True

    async def flush_room_locked(self, room: Room) -> int:
        """Apply every pending update of the room now (lock held by caller)."""
        languages = [lang for key, lang in self._pending if key == room.key]
        applied = 0
        for language in languages:
            self._timers.cancel(("code", room.key, language))
            if await self._apply_locked(room, language):
                applied += 1
        return applied

    def discard_locked(self, room: Room, language: str) -> bool:
        """Throw away a pending update, e.g. when a restore overwrites the buffer."""
        self._timers.cancel(("code", room.key, language))
        return self._pending.pop((room.key, language), None) is not None

    async def get_language_snapshot(self, room_key: str, language: str) -> str:
        async with self.rooms.locked(room_key) as room:
            if room is None:
                return DEFAULT_CODE
            pending = self._pending.get((room_key, language))
            return pending.content if pending else room.code_for(language)

    def pending_count(self) -> int:
        return len(self._pending)
