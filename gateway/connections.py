"""
Connection Manager — the WebSocket transport under the gateway.

Assigns every accepted socket an opaque connection id and sends JSON
event frames to it:

    {"event": "queue:message", "data": {...}}

Sends to one connection are serialized so frames from concurrent
fan-outs never interleave on the same socket.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

logger = structlog.get_logger()


class ConnectionState:
    """Tracks a single WebSocket connection."""

    def __init__(self, connection_id: str, ws: Any):
        self.connection_id = connection_id
        self.ws = ws
        self.connected_at = datetime.now(timezone.utc)
        self.events_sent: int = 0
        self.send_lock = asyncio.Lock()


class ConnectionManager:
    """Live connections keyed by connection id."""

    def __init__(self):
        self._connections: dict[str, ConnectionState] = {}

    def register(self, ws: Any) -> str:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = ConnectionState(connection_id, ws)
        logger.info("connection_registered", connection_id=connection_id)
        return connection_id

    def unregister(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is not None:
            logger.info("connection_removed", connection_id=connection_id)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> Optional[ConnectionState]:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)

    async def send_event(self, connection_id: str, event: str, data: dict[str, Any]) -> bool:
        """
        Send one event frame. Returns False when the connection is already
        gone; transport errors propagate to the caller.
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            logger.debug("send_to_unknown_connection",
                         connection_id=connection_id, event_name=event)
            return False

        frame = json.dumps({"event": event, "data": data})
        async with conn.send_lock:
            await conn.ws.send_text(frame)
        conn.events_sent += 1
        return True
