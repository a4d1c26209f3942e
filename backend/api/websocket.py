"""Pushes bus events to WebSocket clients as ``{"event", "data"}`` JSON."""

import asyncio
import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Fans every published event out to the open event-stream sockets."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.add(websocket)
        logger.info(f"Event stream opened ({len(self._clients)} listening)")

    async def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        logger.info(f"Event stream closed ({len(self._clients)} listening)")

    async def handle_event(self, event_type: str, data: dict) -> None:
        """EventBus subscriber. Clients whose send fails are dropped."""
        if not self._clients:
            return

        message = json.dumps({"event": event_type, "data": data})
        clients = list(self._clients)
        results = await asyncio.gather(
            *(ws.send_text(message) for ws in clients), return_exceptions=True
        )
        for ws, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.debug(f"Dropping event stream client after {event_type}: {result}")
                self._clients.discard(ws)
