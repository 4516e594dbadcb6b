"""Event router feeding decoded ledger events to the projector.

Ordering model:
- events from one source are applied strictly in delivery order by a
  dedicated worker draining that source's queue
- events for the same token from different sources are serialized by a
  per-token lock; different tokens proceed concurrently

Counters: ``applied`` events changed the projection, ``skipped`` were
redeliveries with nothing to change, ``dropped`` failed.

A failing handler is logged and the event dropped. The source cursor is
still advanced past it so a replay doesn't resurrect it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Optional

from ledger.events import LedgerEvent
from projector import Delta, Projector
from store import StateStore

logger = logging.getLogger(__name__)


class KeyedLock:
    """asyncio locks created on demand per key and dropped when idle."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class EventRouter:
    """Dispatches events to the projector and publishes the resulting deltas."""

    def __init__(self, projector: Projector, store: StateStore, notifier=None):
        """Initialize the router.

        Args:
            projector: Applies events to the store
            store: Used to advance cursors past dropped events
            notifier: Optional Notifier receiving applied deltas
        """
        self.projector = projector
        self.store = store
        self.notifier = notifier
        self.token_locks = KeyedLock()
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self.applied = 0
        self.skipped = 0
        self.dropped = 0

    async def submit(self, event: LedgerEvent) -> None:
        """Queue an event behind earlier events from the same source."""
        queue = self._queues.get(event.source)
        if queue is None:
            queue = self._queues[event.source] = asyncio.Queue()
            self._workers[event.source] = asyncio.create_task(
                self._worker(event.source, queue),
                name=f"router-{event.source}"
            )
        await queue.put(event)

    async def _worker(self, source: str, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            finally:
                queue.task_done()

    async def dispatch(self, event: LedgerEvent) -> Optional[Delta]:
        """Apply one event now; failures are logged and swallowed.

        Returns:
            The delta on success, None if skipped or dropped
        """
        token_id = event.token_id
        lock_key = token_id if token_id is not None else ('source', event.source)

        async with self.token_locks.hold(lock_key):
            try:
                delta = await self.projector.apply(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.dropped += 1
                logger.error(f"Dropped {event.describe()}: {type(e).__name__}: {e}")
                await self._skip_past(event)
                return None

        if delta is None:
            self.skipped += 1
            return None

        self.applied += 1
        if self.notifier is not None:
            self.notifier.publish_delta(delta)
        return delta

    async def _skip_past(self, event: LedgerEvent) -> None:
        try:
            await self.store.save_cursor(event.source, event.block_number, event.log_index)
        except Exception as e:
            logger.error(f"Failed to advance {event.source} cursor past dropped event: {e}")

    async def join(self) -> None:
        """Wait until every queued event has been dispatched."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        """Stop the per-source workers; queued events are discarded."""
        for task in self._workers.values():
            task.cancel()
        for task in self._workers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._queues.clear()

    def pending(self) -> int:
        return sum(queue.qsize() for queue in self._queues.values())
