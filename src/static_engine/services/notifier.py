"""Realtime generation events pushed to the owning user's sockets."""

import logging
from typing import Any, Optional

from static_engine.api.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "generation:progress"
COMPLETED_EVENT = "generation:completed"
FAILED_EVENT = "generation:failed"


class GenerationNotifier:
    """Fire-and-forget event sink used by the generation worker.

    Delivery problems are logged and never raised: a lost progress event
    must not fail the variation being generated.
    """

    def __init__(self, ws_manager: Optional[WebSocketManager] = None):
        self.ws_manager = ws_manager or WebSocketManager()

    async def emit_progress(self, user_id: str, payload: dict[str, Any]) -> None:
        logger.info(
            f"Progress [{payload.get('job_id')}]: {payload.get('step')} "
            f"{payload.get('progress_percent')}%"
        )
        await self._emit(user_id, PROGRESS_EVENT, payload)

    async def emit_completed(self, user_id: str, payload: dict[str, Any]) -> None:
        logger.info(f"Completed [{payload.get('job_id')}]: ad {payload.get('ad_id')}")
        await self._emit(user_id, COMPLETED_EVENT, payload)

    async def emit_failed(self, user_id: str, payload: dict[str, Any]) -> None:
        logger.error(f"Failed [{payload.get('job_id')}]: {payload.get('error')}")
        await self._emit(user_id, FAILED_EVENT, payload)

    async def _emit(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            await self.ws_manager.send(user_id, {"event": event, "data": payload})
        except Exception as e:
            logger.warning(f"Failed to deliver {event} to user {user_id}: {e}")
