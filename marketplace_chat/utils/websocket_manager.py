import asyncio
import logging
from typing import Any, Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open sockets per user; sends to one socket are serialised."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)
        self._locks[id(websocket)] = asyncio.Lock()

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        self._locks.pop(id(websocket), None)
        if user_id in self.active_connections:
            try:
                self.active_connections[user_id].remove(websocket)
            except ValueError:
                pass
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    async def send_json(self, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        lock = self._locks.get(id(websocket))
        if lock is None:
            return False
        async with lock:
            try:
                await websocket.send_json(payload)
            except Exception:
                logger.debug("Dropping frame for a closed socket", exc_info=True)
                return False
        return True
