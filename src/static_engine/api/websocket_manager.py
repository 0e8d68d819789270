"""WebSocket connection registry for realtime generation events."""

import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Manages WebSocket connections grouped by user id.

    A user can have several tabs open; every event for that user is sent to
    all of their sockets.
    """

    def __init__(self):
        """Initialize the WebSocket manager with empty connections dict."""
        self.connections: dict[str, list[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        """Accept a WebSocket connection and register it for ``user_id``.

        Args:
            user_id: Owner of the connection
            websocket: The WebSocket connection to add
        """
        await websocket.accept()
        self.connections.setdefault(user_id, []).append(websocket)
        logger.debug(f"WebSocket connected for user {user_id} ({self.connection_count(user_id)} open)")

    async def send(self, user_id: str, message: dict) -> int:
        """Send a JSON message to every socket of ``user_id``.

        Sockets that fail to receive are dropped.

        Returns:
            Number of sockets the message was delivered to
        """
        delivered = 0
        disconnected = []
        for ws in list(self.connections.get(user_id, [])):
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping WebSocket for user {user_id}: {e}")
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(user_id, ws)
        return delivered

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        """Remove a WebSocket; forget the user once no sockets remain."""
        sockets = self.connections.get(user_id)
        if sockets and websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.connections.pop(user_id, None)

    def connection_count(self, user_id: str) -> int:
        return len(self.connections.get(user_id, []))
