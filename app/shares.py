"""
Shareable code snapshots - anonymous, room-independent blobs with a TTL.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

import settings
import store_keys
from room_store import utc_now
from store import DurableStore
from utils.code_generator import ensure_unique_code

logger = logging.getLogger(__name__)


class ShareLinks:
    def __init__(self, store: DurableStore, ttl_seconds: int = settings.SHARE_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def create(self, content: str) -> Tuple[str, datetime]:
        """Store content under a fresh share id; returns (share_id, expires_at)."""
        share_id = await ensure_unique_code(self.store)
        now = utc_now()
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        record = {
            "content": content,
            "created_at": now.isoformat(),
            "expires_at": expires_at.isoformat(),
        }
        await self.store.set(store_keys.SHARE_KEY.format(share_id=share_id), json.dumps(record))
        logger.info(f"Created share link {share_id}")
        return share_id, expires_at

    async def load(self, share_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """Content for share_id, or None when unknown or expired."""
        raw = await self.store.get(store_keys.SHARE_KEY.format(share_id=share_id.strip().upper()))
        if raw is None:
            return None
        record = json.loads(raw)
        if datetime.fromisoformat(record["expires_at"]) <= (now or utc_now()):
            return None
        return record["content"]

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired share records."""
        now = now or utc_now()
        purged = 0
        for key in await self.store.keys(store_keys.SHARE_PREFIX):
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                expires_at = datetime.fromisoformat(json.loads(raw)["expires_at"])
            except (ValueError, KeyError, TypeError):
                logger.warning(f"Dropping unreadable share record {key}")
                expires_at = now
            if expires_at <= now:
                await self.store.delete(key)
                purged += 1
        if purged:
            logger.info(f"Purged {purged} expired share links")
        return purged
