import json
import logging
import uuid
from datetime import datetime, timezone

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Open notification WebSockets, keyed by user."""

    def __init__(self):
        self._connections: dict[str, dict[int, WebSocket]] = {}

    @staticmethod
    def _user_key(user_id: uuid.UUID) -> str:
        return str(user_id)

    def register(self, user_id: uuid.UUID, websocket: WebSocket) -> None:
        self._connections.setdefault(self._user_key(user_id), {})[id(websocket)] = websocket

    def unregister(self, user_id: uuid.UUID, websocket: WebSocket) -> None:
        uk = self._user_key(user_id)
        sockets = self._connections.get(uk)
        if sockets is None:
            return
        sockets.pop(id(websocket), None)
        if not sockets:
            del self._connections[uk]

    def connection_count(self, user_id: uuid.UUID) -> int:
        return len(self._connections.get(self._user_key(user_id), {}))

    async def send_to_user(self, user_id: uuid.UUID, event_type: str, data: dict) -> None:
        sockets = self._connections.get(self._user_key(user_id))
        if not sockets:
            return

        payload = json.dumps({
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, default=str)

        disconnected = []
        for key, ws in sockets.items():
            try:
                await ws.send_text(payload)
            except Exception:
                logger.info(f"Dropping dead notification socket for user {user_id}")
                disconnected.append(key)

        for key in disconnected:
            sockets.pop(key, None)
        if not sockets:
            self._connections.pop(self._user_key(user_id), None)

    async def close_all(self) -> None:
        for uk in list(self._connections.keys()):
            for ws in list(self._connections[uk].values()):
                try:
                    await ws.close(code=1001, reason="Server shutdown")
                except RuntimeError:
                    logger.debug(f"Socket for user {uk} already closed")
            self._connections[uk].clear()
        self._connections.clear()
