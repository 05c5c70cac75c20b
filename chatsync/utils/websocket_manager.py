import logging
from typing import Any, Dict, Set

from fastapi import WebSocket


logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open chat sockets per user. A user may hold several at once (tabs, devices)."""

    def __init__(self) -> None:
        self._sockets: Dict[str, Set[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._sockets.setdefault(user_id, set()).add(websocket)
        logger.debug("%s now has %d open socket(s)", user_id, len(self._sockets[user_id]))

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[user_id]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sockets

    async def send_json(self, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        try:
            await websocket.send_json(payload)
            return True
        except (RuntimeError, ConnectionError) as exc:
            # socket already closed; the receive loop will clean up
            logger.debug("Dropping %s frame for closed socket: %s", payload.get("type"), exc)
            return False
