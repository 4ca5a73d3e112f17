"""WebSocket connection manager for live workflow progress."""
import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages active WebSocket connections per session."""

    def __init__(self):
        self._connections: dict[str, list[WebSocket]] = {}

    async def connect(self, session_id: str, websocket: WebSocket):
        await websocket.accept()
        self._connections.setdefault(session_id, []).append(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket):
        if session_id in self._connections:
            self._connections[session_id] = [
                ws for ws in self._connections[session_id] if ws is not websocket
            ]
            if not self._connections[session_id]:
                del self._connections[session_id]

    def has_listeners(self, session_id: str) -> bool:
        return bool(self._connections.get(session_id))

    async def send_to_session(self, session_id: str, data: dict[str, Any]):
        if session_id not in self._connections:
            return
        message = json.dumps(data, default=str)
        dead: list[WebSocket] = []
        for ws in self._connections[session_id]:
            try:
                await ws.send_text(message)
            except Exception as exc:
                logger.debug("Dropping websocket for session %s: %s", session_id, exc)
                dead.append(ws)
        for ws in dead:
            self.disconnect(session_id, ws)

    def make_node_listener(self, session_id: str, execution_id: str, loop: asyncio.AbstractEventLoop):
        """Graph-store listener forwarding node data patches as node_update events."""
        def listener(node_id: str, patch: dict[str, Any]):
            if not self.has_listeners(session_id):
                return
            asyncio.run_coroutine_threadsafe(
                self.send_to_session(session_id, {
                    "type": "node_update",
                    "execution_id": execution_id,
                    "node_id": node_id,
                    "data": patch,
                }),
                loop,
            )
        return listener


manager = ConnectionManager()
