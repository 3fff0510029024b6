"""
Real-time broadcast channel.

Every connected browser receives every event; there are no per-conversation
subscriptions. Delivery is best effort: events published while nobody is
connected are dropped, and sockets whose send fails are discarded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from fastapi import WebSocket
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketState

from wamirror.metrics import realtime_connections, record_realtime_event

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    NEW_MESSAGE = "new-message"
    STATUS_UPDATE = "status-update"


class RealtimeEvent(BaseModel):
    """Event envelope pushed to clients."""

    event: EventType
    data: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventPublisher(Protocol):
    """Anything the normalizer and the local send path can publish events to."""

    async def publish(self, event: RealtimeEvent) -> None:
        ...


class ConnectionManager:
    """Keeps the connected WebSockets and fans events out to all of them."""

    def __init__(self):
        self._connections: list[WebSocket] = []

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        # Registered before accept so no event published after the handshake is missed
        self._connections.append(websocket)
        realtime_connections.set(len(self._connections))
        await websocket.accept()
        logger.info(f"Realtime client connected ({len(self._connections)} total)")

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._connections:
            self._connections.remove(websocket)
            realtime_connections.set(len(self._connections))
            logger.info(f"Realtime client disconnected ({len(self._connections)} total)")

    async def publish(self, event: RealtimeEvent) -> None:
        """Send the event to every connected client; never raises."""
        if not self._connections:
            logger.debug(f"No realtime clients, dropping {event.event.value} event")
            return

        payload = event.model_dump(mode="json")
        for websocket in list(self._connections):
            if websocket.client_state != WebSocketState.CONNECTED:
                continue
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.warning(f"Dropping realtime client after failed send: {e}")
                self.disconnect(websocket)

        record_realtime_event(event.event.value)


# Singleton instance
_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the process-wide ConnectionManager."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager
