"""
Fan-out dispatcher - delivers room events to connected sockets.

Connections are keyed by a server-assigned connection id. The dispatcher
never calls back into room logic; the coordinator calls into it.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import settings

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self, send_timeout: float = settings.SEND_TIMEOUT_SECONDS):
        self.send_timeout = send_timeout
        # {room_key: {connection_id: websocket}}
        self._rooms: Dict[str, Dict[str, Any]] = {}
        # {connection_id: (room_key, identity)}
        self._owners: Dict[str, Tuple[str, str]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._owners)

    def register(self, room_key: str, connection_id: str, identity: str, websocket: Any):
        self._rooms.setdefault(room_key, {})[connection_id] = websocket
        self._owners[connection_id] = (room_key, identity)
        logger.debug(f"Registered connection {connection_id} ({identity}) in room {room_key}")

    def unregister(self, connection_id: str) -> Optional[Tuple[str, str]]:
        """Forget a connection; returns its (room_key, identity) if it was known."""
        owner = self._owners.pop(connection_id, None)
        if owner is None:
            return None
        room_key = owner[0]
        connections = self._rooms.get(room_key, {})
        connections.pop(connection_id, None)
        if not connections:
            self._rooms.pop(room_key, None)
        logger.debug(f"Unregistered connection {connection_id} from room {room_key}")
        return owner

    def owner_of(self, connection_id: str) -> Optional[Tuple[str, str]]:
        return self._owners.get(connection_id)

    def connections_for(self, room_key: str, identity: str) -> List[str]:
        return [
            conn_id for conn_id in self._rooms.get(room_key, {})
            if self._owners.get(conn_id, (None, None))[1] == identity
        ]

    def has_identity(self, room_key: str, identity: str) -> bool:
        return bool(self.connections_for(room_key, identity))

    def room_size(self, room_key: str) -> int:
        return len(self._rooms.get(room_key, {}))

    async def send(self, connection_id: str, event: str, payload: Optional[dict] = None) -> bool:
        """Send one event to a single connection."""
        owner = self._owners.get(connection_id)
        if owner is None:
            return False
        websocket = self._rooms.get(owner[0], {}).get(connection_id)
        if websocket is None:
            return False
        return await self._safe_send(connection_id, websocket, _encode(event, payload))

    async def broadcast(
        self,
        room_key: str,
        event: str,
        payload: Optional[dict] = None,
        *,
        exclude_connection: Optional[str] = None,
        exclude_identity: Optional[str] = None,
    ) -> int:
        """
        Send an event to every connection in the room.
        Uses asyncio.gather for parallel send; returns the number delivered.
        """
        connections = self._rooms.get(room_key)
        if not connections:
            return 0

        data = _encode(event, payload)
        targets = [
            (conn_id, ws) for conn_id, ws in connections.items()
            if conn_id != exclude_connection
            and (exclude_identity is None or self._owners.get(conn_id, (None, None))[1] != exclude_identity)
        ]
        results = await asyncio.gather(
            *(self._safe_send(conn_id, ws, data) for conn_id, ws in targets),
            return_exceptions=True
        )
        return sum(1 for r in results if r is True)

    async def _safe_send(self, connection_id: str, websocket: Any, data: str) -> bool:
        """Send with error handling; a closing socket is cleaned up by its own handler."""
        try:
            await asyncio.wait_for(websocket.send_text(data), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Send to connection {connection_id} timed out")
        except Exception as e:
            logger.debug(f"Send to connection {connection_id} failed: {e}")
        return False


def _encode(event: str, payload: Optional[dict]) -> str:
    message = {"type": event}
    if payload:
        message.update(payload)
    return json.dumps(message)
