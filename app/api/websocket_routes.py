import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.security import decode_ws_token
from app.services.connections import ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/api/v1/ws/notifications")
async def websocket_notifications(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return

    user = decode_ws_token(token)
    if user is None:
        await websocket.close(code=4001, reason="Invalid token")
        return

    registry: ConnectionRegistry = websocket.app.state.connections
    await websocket.accept()
    registry.register(user.user_id, websocket)
    logger.info(f"Notification socket opened for user {user.user_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = {}
            # Clients only send keepalives on this socket
            if isinstance(data, dict) and data.get("action") == "ping":
                await websocket.send_text(json.dumps({
                    "type": "pong",
                    "data": {},
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }))
    except WebSocketDisconnect:
        logger.info(f"Notification socket closed for user {user.user_id}")
    finally:
        registry.unregister(user.user_id, websocket)
