import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from . import cache

logger = logging.getLogger(__name__)


class Notifier:
    """Fire-and-forget user notifications over redis pub/sub.

    ``notify`` returns immediately; delivery runs as a background task and a
    failed publish is only logged.
    """

    channel_prefix = "notifications"

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    def notify(self, user_id: Optional[int], event: str, payload: Optional[Dict[str, Any]] = None):
        if user_id is None:
            return
        message = json.dumps({"event": event, "user_id": user_id, "payload": payload or {}}, default=str)
        task = asyncio.create_task(self._publish(user_id, event, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, user_id: int, event: str, message: str):
        try:
            await cache.redis_client.publish(f"{self.channel_prefix}:{user_id}", message)
            logger.debug("notify: user=%s event=%s", user_id, event)
        except Exception:
            logger.exception("notify_failed: user=%s event=%s", user_id, event)

    async def drain(self):
        """Wait for in-flight publishes; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
