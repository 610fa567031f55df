"""
Keyed, cancellable one-shot timers.

Every "wait N seconds, then act" in the server goes through one KeyedTimers
instance: save debounce, typing expiry, code-update coalescing and cursor
batching. Keys are tuples of (kind, room_key, sub_key).
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class KeyedTimers:
    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, delay: float, callback: Callable[..., Awaitable], *args) -> None:
        """Start a timer for key, superseding any pending one."""
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._run(key, delay, callback, args))

    def schedule_once(self, key: Hashable, delay: float, callback: Callable[..., Awaitable], *args) -> bool:
        """Start a timer for key unless one is already pending."""
        if self.pending(key):
            return False
        self._tasks[key] = asyncio.create_task(self._run(key, delay, callback, args))
        return True

    def pending(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    def cancel_room(self, room_key: str) -> int:
        """Cancel every timer whose key belongs to room_key."""
        keys = [k for k in self._tasks if isinstance(k, tuple) and len(k) > 1 and k[1] == room_key]
        return sum(1 for k in keys if self.cancel(k))

    async def _run(self, key, delay, callback, args):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        # Drop the entry before running so a reschedule from inside the
        # callback starts a fresh timer instead of cancelling this one.
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback(*args)
        except Exception:
            logger.exception(f"Timer {key} failed")

    async def shutdown(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self):
        return sum(1 for task in self._tasks.values() if not task.done())
