"""
Background cleanup worker for expired shares and abandoned rooms,
plus the periodic full-table backup.
"""
import asyncio
import logging

import settings

logger = logging.getLogger(__name__)


async def cleanup_expired(manager, room_max_age: float = settings.ROOM_RETENTION_SECONDS) -> dict:
    """Delete expired share links and rooms that sat empty past the retention age."""
    shares = await manager.shares.purge_expired()
    rooms = await manager.rooms.purge_inactive(room_max_age)
    if shares or rooms:
        logger.info(f"Cleanup removed {shares} shares and {rooms} rooms")
    return {"shares": shares, "rooms": rooms}


async def cleanup_loop(manager, interval: float = settings.CLEANUP_INTERVAL_SECONDS):
    """Run cleanup every `interval` seconds."""
    while True:
        try:
            await cleanup_expired(manager)
        except Exception as e:
            logger.error(f"Cleanup error: {e}", exc_info=True)
        await asyncio.sleep(interval)


async def backup_loop(manager, interval: float = settings.BACKUP_INTERVAL_SECONDS):
    """Write the full-table backup record every `interval` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await manager.rooms.backup()
        except Exception as e:
            logger.error(f"Backup error: {e}", exc_info=True)
