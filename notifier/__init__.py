"""Notifier module for live updates.

Subscribers (e.g. websocket clients) receive two kinds of messages:
- ``connection``: ingestion connection lifecycle (disconnected, connecting, subscribed)
- ``delta``: what a just-committed event changed in the projection

Each subscriber owns a bounded queue. A subscriber that falls behind loses its
oldest queued messages rather than blocking ingestion.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Notifier:
    """In-process fan-out of engine notifications."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self.connection_state: Optional[Dict[str, Any]] = None

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber; the current connection state is queued first."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        if self.connection_state is not None:
            queue.put_nowait(self.connection_state)
        self._subscribers.add(queue)
        logger.info(f"Subscriber added ({len(self._subscribers)} active)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)
        logger.info(f"Subscriber removed ({len(self._subscribers)} active)")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a message for every subscriber."""
        message = {
            "type": kind,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                logger.warning("Subscriber queue full, dropped oldest message")
            queue.put_nowait(message)
        return message

    def publish_connection(self, state: str, **details) -> None:
        """Report an ingestion connection lifecycle change."""
        self.connection_state = self.publish("connection", {"state": state, **details})

    def publish_delta(self, delta) -> None:
        """Report a committed projection change."""
        self.publish("delta", delta.to_dict())
