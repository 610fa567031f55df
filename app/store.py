"""
Durable store interface and the non-SQL backends.

Room records, share links and backups are kept as string blobs under flat
keys (see store_keys). Anything implementing get/set/delete/keys can back
the room coordinator.
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import settings

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the durable store cannot be read."""


class DurableStore:
    """Key/blob persistence."""

    async def init(self) -> None:
        pass

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryStore(DurableStore):
    """Process-local store, used for tests and throwaway servers."""

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self.data if k.startswith(prefix)]


class JsonFileStore(DurableStore):
    """
    Single JSON file holding every key.

    The whole file is rewritten on each change (write to a temp file, then
    replace), so this suits small deployments only.
    """

    def __init__(self, path: Path = settings.DATA_FILE):
        self.path = Path(path)
        self._data: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    async def _loaded(self) -> Dict[str, str]:
        if self._data is None:
            try:
                self._data = await asyncio.to_thread(self._read)
            except (OSError, json.JSONDecodeError) as e:
                raise StoreError(f"Cannot read {self.path}: {e}") from e
        return self._data

    async def init(self) -> None:
        async with self._lock:
            await self._loaded()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return (await self._loaded()).get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = dict(await self._loaded())
            data[key] = value
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = dict(await self._loaded())
            if data.pop(key, None) is None:
                return
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            return [k for k in await self._loaded() if k.startswith(prefix)]


def build_store(backend: str = settings.STORE_BACKEND) -> DurableStore:
    """Create the store named by STORE_BACKEND."""
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(settings.DATA_FILE)
    if backend == "sqlite":
        from database import SQLiteStore
        return SQLiteStore(settings.DATABASE_PATH)
    raise ValueError(f"Unknown store backend: {backend}")
