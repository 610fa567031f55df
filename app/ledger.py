"""
Commit/restore ledger - append-only history of named code snapshots per room.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

import settings
from code_sync import CodeSync
from dispatcher import Dispatcher
from room_models import CODE_UPDATE, COMMIT_LIST, LANGUAGE_UPDATE, RESTORE_FAILED
from room_store import Commit, Room, RoomStore, utc_now
from utils.code_generator import generate_commit_id

logger = logging.getLogger(__name__)


class CommitLedger:
    def __init__(
        self,
        rooms: RoomStore,
        dispatcher: Dispatcher,
        code_sync: CodeSync,
        *,
        dedupe_window: float = settings.COMMIT_DEDUPE_SECONDS,
        retention: int = settings.COMMIT_RETENTION,
    ):
        self.rooms = rooms
        self.dispatcher = dispatcher
        self.code_sync = code_sync
        self.dedupe_window = dedupe_window
        self.retention = retention

    def _find_duplicate(self, room: Room, language: str, content: str, now: datetime) -> Optional[Commit]:
        if self.dedupe_window <= 0:
            return None
        cutoff = now - timedelta(seconds=self.dedupe_window)
        for commit in reversed(room.commit_log):
            if datetime.fromisoformat(commit.created_at) < cutoff:
                break
            if commit.language == language and commit.content == content:
                return commit
        return None

    async def commit(
        self,
        room_key: str,
        language: str,
        content: str,
        message: str = "",
        author: Optional[str] = None,
    ) -> Optional[str]:
        """
        Append a commit and broadcast the new summary list.

        Returns the commit id, the id of an identical recent commit when this
        one is suppressed as a duplicate, or None if the room does not exist.
        """
        async with self.rooms.locked(room_key) as room:
            if room is None:
                logger.debug(f"Ignoring commit for unknown room {room_key}")
                return None

            now = utc_now()
            duplicate = self._find_duplicate(room, language, content, now)
            if duplicate is not None:
                logger.info(f"Suppressed duplicate commit in room {room_key} (same as {duplicate.id})")
                return duplicate.id

            commit = Commit(
                id=generate_commit_id(now, {c.id for c in room.commit_log}),
                created_at=now.isoformat(),
                author=author,
                language=language,
                message=message,
                content=content,
            )
            room.commit_log.append(commit)
            if self.retention and len(room.commit_log) > self.retention:
                del room.commit_log[:len(room.commit_log) - self.retention]
            self.rooms.mark_dirty(room)
            logger.info(f"Commit {commit.id} ({language}) by {author} in room {room_key}")

            await self.dispatcher.broadcast(room_key, COMMIT_LIST, {"commits": room.commit_summaries()})
            return commit.id

    async def restore(self, room_key: str, commit_id: str, connection_id: Optional[str] = None) -> bool:
        """Write a commit's content back into its language buffer."""
        async with self.rooms.locked(room_key) as room:
            commit = room.find_commit(commit_id) if room is not None else None
            if commit is None:
                logger.warning(f"Restore failed: commit {commit_id} not found in room {room_key}")
                if connection_id:
                    await self.dispatcher.send(connection_id, RESTORE_FAILED, {
                        "commit_id": commit_id,
                        "message": "Commit not found",
                    })
                return False

            self.code_sync.discard_locked(room, commit.language)
            room.code_by_language[commit.language] = commit.content
            self.rooms.mark_dirty(room)
            logger.info(f"Restored commit {commit_id} ({commit.language}) in room {room_key}")

            payload = {"language": commit.language, "content": commit.content}
            await self.dispatcher.broadcast(room_key, CODE_UPDATE, payload)
            await self.dispatcher.broadcast(room_key, LANGUAGE_UPDATE, payload)
            return True

    async def list_commits(self, room_key: str) -> List[dict]:
        async with self.rooms.locked(room_key) as room:
            return room.commit_summaries() if room is not None else []
