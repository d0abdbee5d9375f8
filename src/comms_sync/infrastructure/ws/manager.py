"""In-process registry of connected UI shells."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

from comms_sync.infrastructure.ws.protocol import WsOutbound

logger = logging.getLogger(__name__)


class UiConnectionManager:
    """Tracks the UI WebSockets that receive cue, toast and cache events."""

    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()

    def __len__(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.add(ws)
        logger.debug("UI connected (total=%d)", len(self._connections))

    def disconnect(self, ws: WebSocket) -> None:
        self._connections.discard(ws)
        logger.debug("UI disconnected (total=%d)", len(self._connections))

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> None:
        """Send one event to every connected shell, dropping dead sockets."""
        raw = WsOutbound(type=event_type, data=data).model_dump_json()
        dead: list[WebSocket] = []
        for ws in list(self._connections):
            try:
                await ws.send_text(raw)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    async def send(self, ws: WebSocket, event_type: str, data: dict[str, Any]) -> None:
        await ws.send_text(WsOutbound(type=event_type, data=data).model_dump_json())
