"""
Room Manager - real-time room coordinator.

Owns the room table and its sub-components (presence, code sync, commit
ledger, share links) and turns validated client events into serialized
room mutations plus broadcasts. Every mutation of a room runs under that
room's lock, so members see broadcasts in the order they were applied.
"""
import asyncio
import logging
from typing import Any, List, Optional

import settings
from code_sync import CodeSync
from dispatcher import Dispatcher
from ledger import CommitLedger
from presence import PresenceTracker
from room_models import (
    CHAT_MESSAGE, COMMIT_LIST, ERROR, LANGUAGE_UPDATE, MEMBER_LIST, OWNER_CHANGED,
    SHARE_LINK, SHARED_CODE_ERROR, SHARED_CODE_LOADED, SYNC_SNAPSHOT,
    ClientEvent,
)
from room_store import ChatMessage, Room, RoomSnapshot, RoomStore, utc_now
from scheduler import KeyedTimers
from security import sanitize_input
from shares import ShareLinks
from store import DurableStore, StoreError

logger = logging.getLogger(__name__)


class RoomManager:
    """
    Coordinates room state for every connected client.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        dispatcher: Optional[Dispatcher] = None,
        timers: Optional[KeyedTimers] = None,
        save_interval: float = settings.SAVE_INTERVAL,
        code_interval: float = settings.CODE_UPDATE_INTERVAL,
        typing_timeout: float = settings.TYPING_TIMEOUT,
        cursor_interval: float = settings.CURSOR_BATCH_INTERVAL,
        chat_limit: int = settings.CHAT_HISTORY_LIMIT,
        commit_dedupe: float = settings.COMMIT_DEDUPE_SECONDS,
        commit_retention: int = settings.COMMIT_RETENTION,
        share_ttl: int = settings.SHARE_TTL_SECONDS,
    ):
        self.store = store
        self.timers = timers or KeyedTimers()
        self.dispatcher = dispatcher or Dispatcher()
        self.rooms = RoomStore(
            store, self.timers, save_interval=save_interval,
            on_load=self._prune_stale_members, live_members=self._live_members,
        )
        self.presence = PresenceTracker(
            self.rooms, self.dispatcher, self.timers,
            typing_timeout=typing_timeout, cursor_interval=cursor_interval,
        )
        self.code_sync = CodeSync(self.rooms, self.dispatcher, self.timers, interval=code_interval)
        self.ledger = CommitLedger(
            self.rooms, self.dispatcher, self.code_sync,
            dedupe_window=commit_dedupe, retention=commit_retention,
        )
        self.shares = ShareLinks(store, ttl_seconds=share_ttl)
        self.chat_limit = chat_limit
        self._background_tasks: list = []

    # Membership ------------------------------------------------------------
    def _live_members(self, room: Room) -> List[str]:
        return [m for m in room.members if self.dispatcher.has_identity(room.key, m)]

    def _prune_stale_members(self, room: Room):
        """
        A room read back from the store lists the members it had when it was
        saved. Anyone without a live connection is dropped.
        """
        live = self._live_members(room)
        if live == room.members:
            return
        logger.info(f"Dropping {len(room.members) - len(live)} stale members from room {room.key}")
        room.members = live
        if room.host not in live:
            room.host = live[0] if live else None
        self.rooms.mark_dirty(room)

    def _snapshot(self, room: Room) -> RoomSnapshot:
        return RoomSnapshot(
            room_key=room.key,
            members=list(room.members),
            host=room.host,
            code=dict(room.code_by_language),
            chat=[{"identity": m.identity, "message": m.message, "timestamp": m.timestamp}
                  for m in room.chat_log],
            commits=room.commit_summaries(),
            typing=self.presence.typing_list(room),
            cursors=self.presence.fresh_cursors(room),
        )

    async def _broadcast_members(self, room: Room):
        await self.dispatcher.broadcast(room.key, MEMBER_LIST, {"members": list(room.members)})
        await self.dispatcher.broadcast(room.key, OWNER_CHANGED, {"host": room.host})

    async def join(
        self,
        room_key: str,
        identity: str,
        connection_id: Optional[str] = None,
        websocket: Any = None,
    ) -> RoomSnapshot:
        """
        Add identity to the room (created on first join) and hand the
        joining connection the full room state.
        """
        async with self.rooms.locked(room_key, create=True) as room:
            if connection_id and websocket is not None:
                self.dispatcher.register(room_key, connection_id, identity, websocket)

            # Late joiners must not see a buffer older than what others get next
            await self.code_sync.flush_room_locked(room)

            if identity not in room.members:
                room.members.append(identity)
                if room.host is None:
                    room.host = identity
                self.rooms.mark_dirty(room)
                logger.info(f"{identity} joined room {room_key} ({room.user_count} members)")
            else:
                room.touch()

            snapshot = self._snapshot(room)
            if connection_id:
                await self.dispatcher.send(connection_id, SYNC_SNAPSHOT, snapshot.to_dict())
            await self._broadcast_members(room)
            return snapshot

    async def _leave_locked(self, room: Room, identity: str) -> bool:
        if identity not in room.members:
            return False
        room.members.remove(identity)
        await self.presence.forget_locked(room, identity)
        if room.host == identity:
            room.host = room.members[0] if room.members else None
            logger.info(f"Host of room {room.key} is now {room.host}")
        self.rooms.mark_dirty(room)
        logger.info(f"{identity} left room {room.key} ({room.user_count} members)")
        await self._broadcast_members(room)
        return True

    async def leave(self, room_key: str, identity: str) -> bool:
        """Remove identity; the room itself always survives."""
        async with self.rooms.locked(room_key) as room:
            if room is None:
                return False
            return await self._leave_locked(room, identity)

    async def disconnect(self, connection_id: str) -> bool:
        """
        Drop a connection. Its identity leaves the room only when no other
        connection with the same identity is still open there.
        """
        owner = self.dispatcher.owner_of(connection_id)
        if owner is None:
            return False
        room_key, identity = owner
        async with self.rooms.locked(room_key) as room:
            self.dispatcher.unregister(connection_id)
            if room is None:
                return False
            if self.dispatcher.has_identity(room_key, identity):
                logger.debug(f"{identity} still has open connections in room {room_key}")
                return False
            return await self._leave_locked(room, identity)

    # Chat ------------------------------------------------------------------
    async def send_message(self, room_key: str, identity: str, message: str) -> Optional[ChatMessage]:
        """Append a chat message (oldest evicted past chat_limit) and broadcast it."""
        text = sanitize_input(message, max_length=settings.MAX_CHAT_LENGTH).strip()
        if not text:
            return None
        async with self.rooms.locked(room_key) as room:
            if room is None:
                logger.debug(f"Ignoring message for unknown room {room_key}")
                return None
            chat_message = ChatMessage(identity=identity, message=text, timestamp=utc_now().isoformat())
            room.chat_log.append(chat_message)
            if len(room.chat_log) > self.chat_limit:
                del room.chat_log[:len(room.chat_log) - self.chat_limit]
            self.rooms.mark_dirty(room)
            await self.dispatcher.broadcast(room_key, CHAT_MESSAGE, {
                "identity": chat_message.identity,
                "message": chat_message.message,
                "timestamp": chat_message.timestamp,
            })
            return chat_message

    # Shares ----------------------------------------------------------------
    async def create_share_link(self, content: str, connection_id: Optional[str] = None) -> str:
        share_id, expires_at = await self.shares.create(content)
        if connection_id:
            await self.dispatcher.send(connection_id, SHARE_LINK, {
                "share_id": share_id,
                "url": f"{settings.SHARE_BASE_URL}{share_id}",
                "expires_at": expires_at.isoformat(),
            })
        return share_id

    async def load_share_link(self, share_id: str, connection_id: Optional[str] = None) -> Optional[str]:
        content = await self.shares.load(share_id)
        if connection_id:
            if content is None:
                await self.dispatcher.send(connection_id, SHARED_CODE_ERROR, {"message": "Shared code not found!"})
            else:
                await self.dispatcher.send(connection_id, SHARED_CODE_LOADED, {
                    "share_id": share_id, "content": content,
                })
        return content

    # Event dispatch --------------------------------------------------------
    async def handle_event(self, event: ClientEvent):
        """
        Apply one validated client event. Failures are logged and reported to
        the sender; they never escape into the connection loop.
        """
        try:
            await self._dispatch(event)
        except StoreError as e:
            logger.error(f"Store unavailable for {event.type} in room {event.room_key}: {e}")
            if event.connection_id:
                await self.dispatcher.send(event.connection_id, ERROR, {"message": "Room temporarily unavailable"})
        except Exception:
            logger.exception(f"Error handling {event.type} in room {event.room_key}")
            if event.connection_id:
                await self.dispatcher.send(event.connection_id, ERROR, {"message": "Internal error"})

    async def _dispatch(self, event: ClientEvent):
        msg_type = event.type
        room_key = event.room_key
        conn_id = event.connection_id

        if msg_type == "join":
            await self.join(room_key, event.identity, connection_id=conn_id)
        elif msg_type == "leave":
            if conn_id and self.dispatcher.owner_of(conn_id):
                await self.disconnect(conn_id)
            else:
                await self.leave(room_key, event.identity)
        elif msg_type == "code-update":
            await self.code_sync.update_code(room_key, event.language, event.content, event.identity, conn_id)
        elif msg_type == "typing-start":
            await self.presence.set_typing(room_key, event.identity)
        elif msg_type == "typing-stop":
            await self.presence.clear_typing(room_key, event.identity)
        elif msg_type == "send-message":
            await self.send_message(room_key, event.identity, event.message)
        elif msg_type == "commit":
            await self.ledger.commit(room_key, event.language, event.content, event.message, event.identity)
        elif msg_type == "restore":
            await self.ledger.restore(room_key, event.commit_id, connection_id=conn_id)
        elif msg_type == "language-update":
            content = await self.code_sync.get_language_snapshot(room_key, event.language)
            if conn_id:
                await self.dispatcher.send(conn_id, LANGUAGE_UPDATE, {"language": event.language, "content": content})
        elif msg_type == "get-commit-history":
            commits = await self.ledger.list_commits(room_key)
            if conn_id:
                await self.dispatcher.send(conn_id, COMMIT_LIST, {"commits": commits})
        elif msg_type == "cursor-update":
            await self.presence.update_cursor(room_key, event.identity, event.language, event.line, event.column)
        elif msg_type == "generate-share-link":
            await self.create_share_link(event.content, connection_id=conn_id)
        elif msg_type == "load-shared-code":
            await self.load_share_link(event.share_id, connection_id=conn_id)

    # Lifecycle -------------------------------------------------------------
    def start_background_tasks(self):
        """Start the cleanup and backup loops."""
        from cleanup import backup_loop, cleanup_loop
        if not self._background_tasks:
            self._background_tasks = [
                asyncio.create_task(cleanup_loop(self)),
                asyncio.create_task(backup_loop(self)),
            ]

    async def close(self):
        """Stop background work and write every dirty room."""
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []
        for room_key in self.rooms.keys():
            async with self.rooms.locked(room_key) as room:
                if room is not None:
                    await self.code_sync.flush_room_locked(room)
        await self.timers.shutdown()
        flushed = await self.rooms.flush_all()
        logger.info(f"Flushed {flushed} rooms on shutdown")

    def stats(self) -> dict:
        return {
            "rooms": len(self.rooms),
            "connections": self.dispatcher.connection_count,
            "pending_timers": len(self.timers),
            "pending_code_updates": self.code_sync.pending_count(),
        }
