"""WebSocket fan-out for plant updates."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

SEND_TIMEOUT_S = 2.0


class WsHub:
    """Tracks connected clients and pushes JSON messages to all of them.

    Clients that fail or time out on a send are dropped, so one slow client
    never holds up the others.
    """

    def __init__(self, send_timeout: float = SEND_TIMEOUT_S):
        self.active_connections: List[WebSocket] = []
        self.send_timeout = send_timeout
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the event loop that owns the sockets."""
        self._loop = loop

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket client disconnected. Total: {len(self.active_connections)}")

    async def send(self, websocket: WebSocket, message: Dict[str, Any]) -> bool:
        """Send to one client; drop it on failure. Returns whether it was delivered."""
        try:
            await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.warning(f"Error sending to client (removing): {e!r}")
            self.disconnect(websocket)
            return False

    async def broadcast(self, message: Dict[str, Any]) -> None:
        if not self.active_connections:
            return
        # iterate a copy; send() may remove entries
        await asyncio.gather(*(self.send(ws, message) for ws in self.active_connections[:]))

    def broadcast_threadsafe(self, message: Dict[str, Any]) -> None:
        """Schedule a broadcast from a non-loop thread without waiting for it."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self.active_connections:
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(message), loop)
