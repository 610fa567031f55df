"""
SQLite async database connection and the SQLite-backed durable store.
"""
import aiosqlite
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import settings
from store import DurableStore

DATABASE_PATH = settings.DATABASE_PATH


async def get_db(path: Path = DATABASE_PATH):
    """Get database connection."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    return db


async def init_db(path: Path = DATABASE_PATH):
    """Initialize database with required tables."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(path) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await db.commit()


class SQLiteStore(DurableStore):
    """Durable store keeping one row per key."""

    def __init__(self, path: Path = DATABASE_PATH):
        self.path = Path(path)

    async def init(self) -> None:
        await init_db(self.path)

    async def get(self, key: str) -> Optional[str]:
        db = await get_db(self.path)
        try:
            cursor = await db.execute("SELECT value FROM records WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row["value"] if row else None
        finally:
            await db.close()

    async def set(self, key: str, value: str) -> None:
        db = await get_db(self.path)
        try:
            await db.execute(
                """
                INSERT INTO records (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, datetime.now(timezone.utc).isoformat())
            )
            await db.commit()
        finally:
            await db.close()

    async def delete(self, key: str) -> None:
        db = await get_db(self.path)
        try:
            await db.execute("DELETE FROM records WHERE key = ?", (key,))
            await db.commit()
        finally:
            await db.close()

    async def keys(self, prefix: str = "") -> List[str]:
        db = await get_db(self.path)
        try:
            # substr avoids LIKE wildcard escaping for keys containing % or _
            cursor = await db.execute(
                "SELECT key FROM records WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix)
            )
            rows = await cursor.fetchall()
            return [row["key"] for row in rows]
        finally:
            await db.close()
