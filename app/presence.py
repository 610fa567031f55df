"""
Presence & typing tracker.

Typing flags expire on their own after TYPING_TIMEOUT so a client that
freezes or drops without "typing-stop" does not stay marked as typing.
Cursor moves are batched into one broadcast per room per interval.
"""
import logging
import time
from typing import Dict, List, Optional

import settings
from dispatcher import Dispatcher
from room_models import CURSOR_UPDATE, USER_TYPING
from room_store import Cursor, Room, RoomStore
from scheduler import KeyedTimers

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(
        self,
        rooms: RoomStore,
        dispatcher: Dispatcher,
        timers: KeyedTimers,
        *,
        typing_timeout: float = settings.TYPING_TIMEOUT,
        cursor_interval: float = settings.CURSOR_BATCH_INTERVAL,
        cursor_stale: float = settings.CURSOR_STALE_SECONDS,
    ):
        self.rooms = rooms
        self.dispatcher = dispatcher
        self.typing_timeout = typing_timeout
        self.cursor_interval = cursor_interval
        self.cursor_stale = cursor_stale
        self._timers = timers

    # Typing ----------------------------------------------------------------
    @staticmethod
    def typing_list(room: Room) -> List[str]:
        return sorted(room.typing)

    async def set_typing(self, room_key: str, identity: str) -> bool:
        """Flag identity as typing; broadcasts only when the flag was off."""
        async with self.rooms.locked(room_key) as room:
            if room is None:
                logger.debug(f"Ignoring typing-start for unknown room {room_key}")
                return False
            self._timers.schedule(
                ("typing", room_key, identity), self.typing_timeout,
                self._expire_typing, room_key, identity
            )
            if identity in room.typing:
                return False
            room.typing.add(identity)
            await self._broadcast_typing(room)
            return True

    async def clear_typing(self, room_key: str, identity: str) -> bool:
        async with self.rooms.locked(room_key) as room:
            if room is None:
                return False
            return await self.clear_typing_locked(room, identity)

    async def clear_typing_locked(self, room: Room, identity: str) -> bool:
        self._timers.cancel(("typing", room.key, identity))
        if identity not in room.typing:
            return False
        room.typing.discard(identity)
        await self._broadcast_typing(room)
        return True

    async def _expire_typing(self, room_key: str, identity: str):
        async with self.rooms.locked(room_key) as room:
            # A newer typing-start re-armed the timer while we waited for the lock
            if room is None or self._timers.pending(("typing", room_key, identity)):
                return
            if identity in room.typing:
                logger.debug(f"Typing flag for {identity} in room {room_key} expired")
                room.typing.discard(identity)
                await self._broadcast_typing(room)

    async def _broadcast_typing(self, room: Room):
        await self.dispatcher.broadcast(room.key, USER_TYPING, {"typing": self.typing_list(room)})

    # Cursors ---------------------------------------------------------------
    def fresh_cursors(self, room: Room, now: Optional[float] = None) -> Dict[str, Dict[str, dict]]:
        now = now or time.time()
        result = {}
        for identity, by_language in room.cursors.items():
            fresh = {
                language: {"line": c.line, "column": c.column}
                for language, c in by_language.items()
                if now - c.updated_at <= self.cursor_stale
            }
            if fresh:
                result[identity] = fresh
        return result

    async def update_cursor(self, room_key: str, identity: str, language: str, line: int, column: int) -> bool:
        async with self.rooms.locked(room_key) as room:
            if room is None or identity not in room.members:
                return False
            room.cursors.setdefault(identity, {})[language] = Cursor(line, column, time.time())
            self._timers.schedule_once(
                ("cursor", room_key), self.cursor_interval, self._flush_cursors, room_key
            )
            return True

    async def _flush_cursors(self, room_key: str):
        async with self.rooms.locked(room_key) as room:
            if room is None:
                return
            await self.dispatcher.broadcast(room_key, CURSOR_UPDATE, {"cursors": self.fresh_cursors(room)})

    # Departure -------------------------------------------------------------
    async def forget_locked(self, room: Room, identity: str):
        """Drop every presence trace of identity (it left the room)."""
        room.cursors.pop(identity, None)
        await self.clear_typing_locked(room, identity)
