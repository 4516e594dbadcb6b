"""Monitor module for following the tracked ledger contracts.

This module keeps one log subscription per event source alive:
- Explicit connection state machine (disconnected, connecting, subscribed)
- Supervisor loop with fixed or exponential reconnect backoff
- Checkpoint replay of logs missed while disconnected
- Hand-off of decoded events to the EventRouter
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import backoff

from config import ConfigurationError, source_addresses
from ledger import (
    SOURCES,
    LedgerClient,
    LedgerError,
    MalformedLogError,
    decode_log,
    load_abi_layouts,
)
from ledger.events import IndexedLayouts, LedgerEvent
from store import StateStore
from .router import EventRouter, KeyedLock

logger = logging.getLogger(__name__)

# Maximum block span per eth_getLogs request during replay
REPLAY_CHUNK_BLOCKS = 2000


class ConnectionState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    SUBSCRIBED = 'subscribed'


def _log_position(log: Dict[str, Any]) -> Tuple[int, int]:
    try:
        return (int(log.get('blockNumber'), 16), int(log.get('logIndex'), 16))
    except (TypeError, ValueError):
        return (-1, -1)


class ConnectionManager:
    """Owns the ledger subscriptions for all tracked sources."""

    def __init__(
        self,
        endpoint: str,
        addresses: Dict[str, str],
        router: EventRouter,
        store: StateStore,
        notifier=None,
        reconnect_delay: float = 5.0,
        reconnect_max_delay: Optional[float] = None,
        jitter: bool = False,
        start_block: Optional[int] = None,
        layouts: Optional[IndexedLayouts] = None,
        request_timeout: float = 10.0,
        client_factory: Callable[..., LedgerClient] = LedgerClient,
        replay_chunk: int = REPLAY_CHUNK_BLOCKS
    ):
        """Initialize the connection manager.

        Args:
            endpoint: Websocket JSON-RPC URL of the ledger node
            addresses: Contract address per source name
            router: Receives decoded events
            store: Read for replay cursors
            notifier: Optional Notifier told about state changes
            reconnect_delay: Seconds before the first reconnect attempt
            reconnect_max_delay: Cap for exponential backoff; equal to
                reconnect_delay (the default) keeps the interval fixed
            jitter: Apply full jitter to each reconnect wait
            start_block: Replay start for sources without a cursor;
                None starts at the current head
            layouts: Indexed-parameter layouts from ABI files
            request_timeout: Per-request timeout for the ledger client
            client_factory: Builds the ledger client for each session

        Raises:
            ConfigurationError: If the endpoint or any source address is missing
        """
        if not endpoint:
            raise ConfigurationError("Ledger endpoint URL is not configured")
        missing = [source for source in SOURCES if not addresses.get(source)]
        if missing:
            raise ConfigurationError(f"No contract address configured for: {', '.join(missing)}")

        self.endpoint = endpoint
        self.addresses = {source: addresses[source].lower() for source in SOURCES}
        self.router = router
        self.store = store
        self.notifier = notifier
        self.reconnect_delay = reconnect_delay
        self.reconnect_max_delay = max(reconnect_max_delay or reconnect_delay, reconnect_delay)
        self.jitter = jitter
        self.start_block = start_block
        self.layouts = layouts or {}
        self.request_timeout = request_timeout
        self.client_factory = client_factory
        self.replay_chunk = replay_chunk

        self.state = ConnectionState.DISCONNECTED
        self.sessions = 0
        self._client: Optional[LedgerClient] = None
        self._stopping = asyncio.Event()
        self._last_seen: Dict[str, Tuple[int, int]] = {}
        self._waits = self._wait_generator()

    def _wait_generator(self):
        if self.reconnect_max_delay > self.reconnect_delay:
            waits = backoff.expo(factor=self.reconnect_delay, max_value=self.reconnect_max_delay)
        else:
            waits = backoff.constant(interval=self.reconnect_delay)
        # Advance past the initial .send() yield of backoff wait generators
        next(waits)
        return waits

    def next_delay(self) -> float:
        delay = next(self._waits)
        return backoff.full_jitter(delay) if self.jitter else delay

    def _set_state(self, state: ConnectionState, **details) -> None:
        self.state = state
        logger.info(f"Ledger connection {state.value}")
        if self.notifier is not None:
            self.notifier.publish_connection(state.value, **details)

    async def run(self) -> None:
        """Supervisor loop: connect, subscribe, follow, and reconnect until stopped."""
        while not self._stopping.is_set():
            self._set_state(ConnectionState.CONNECTING, endpoint=self.endpoint)
            try:
                await self._run_session()
            except LedgerError as e:
                logger.warning(f"Ledger session ended: {e}")
            finally:
                await self._close_client()
                self._set_state(ConnectionState.DISCONNECTED)

            if self._stopping.is_set():
                break

            delay = self.next_delay()
            logger.info(f"Reconnecting to ledger in {delay:.1f}s")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Connection manager stopped")

    async def stop(self) -> None:
        """Ask the supervisor loop to exit and drop the live connection."""
        logger.info("Stopping ledger connection manager...")
        self._stopping.set()
        await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def _run_session(self) -> None:
        client = self._client = self.client_factory(self.endpoint, self.request_timeout)
        await client.connect()
        if self._stopping.is_set():
            return

        # Subscribe before replaying so nothing emitted in between is missed
        subscriptions: Dict[str, str] = {}
        for source, address in self.addresses.items():
            subscription_id = await client.subscribe_logs(address)
            subscriptions[subscription_id] = source
            logger.info(f"Subscribed to {source} logs at {address}")

        self.sessions += 1
        self._waits = self._wait_generator()
        self._set_state(ConnectionState.SUBSCRIBED, sources=list(self.addresses))

        head = await client.block_number()
        await self._catch_up(client, head)

        async for subscription_id, log in client.notifications():
            source = subscriptions.get(subscription_id)
            if source is None:
                logger.debug(f"Notification for unknown subscription {subscription_id}")
                continue
            await self._handle_log(source, log)

    async def _replay_starts(self, head: int) -> Dict[str, int]:
        starts: Dict[str, int] = {}
        for source in self.addresses:
            cursor = await self.store.get_cursor(source)
            if cursor is not None:
                starts[source] = cursor.block_number
                if cursor.position > self._last_seen.get(source, (-1, -1)):
                    self._last_seen[source] = cursor.position
            elif self.start_block is not None:
                starts[source] = self.start_block
            else:
                logger.info(f"No checkpoint for {source}, following from block {head}")
        return starts

    async def _catch_up(self, client: LedgerClient, head: int) -> None:
        """Replay missed logs of every source in ledger order.

        Each chunk is fetched for all sources, merged by (block, log index)
        and applied one event at a time.
        """
        starts = await self._replay_starts(head)
        if not starts:
            return

        # Events still queued from the previous session go first
        await self.router.join()

        replayed = 0
        first_block = min(starts.values())
        for start in range(first_block, head + 1, self.replay_chunk):
            end = min(start + self.replay_chunk - 1, head)
            batch = []
            for source, from_block in starts.items():
                if from_block > end:
                    continue
                logs = await client.get_logs(self.addresses[source], max(start, from_block), end)
                batch.extend((_log_position(log), source, log) for log in logs)

            batch.sort(key=lambda item: item[0])
            for _, source, log in batch:
                event = self._accept(source, log)
                if event is not None:
                    await self.router.dispatch(event)
                    replayed += 1

        if replayed:
            logger.info(f"Replayed {replayed} events from block {first_block} to {head}")

    def _accept(self, source: str, log: Dict[str, Any]) -> Optional[LedgerEvent]:
        """Decode one log; returns None if it is malformed, removed or already seen."""
        try:
            event = decode_log(source, log, self.layouts)
        except MalformedLogError as e:
            logger.error(f"Dropped malformed {source} log: {e}")
            return None

        if event.removed:
            logger.warning(f"Ignoring removed (reorged) log {event.describe()}")
            return None

        last = self._last_seen.get(source)
        if last is not None and event.position <= last:
            logger.debug(f"Skipping already seen {event.describe()}")
            return None

        self._last_seen[source] = event.position
        return event

    async def _handle_log(self, source: str, log: Dict[str, Any]) -> bool:
        """Decode and route one live log; returns whether it was routed."""
        event = self._accept(source, log)
        if event is None:
            return False
        await self.router.submit(event)
        return True


def monitor_ledger(settings: Dict[str, Any], router: EventRouter, store: StateStore, notifier=None) -> ConnectionManager:
    """Create a ConnectionManager from loaded settings.

    Args:
        settings: Validated settings from config.load_config()
        router: Event router
        store: Projection store
        notifier: Optional notifier

    Returns:
        ConnectionManager: A new, not yet running, connection manager
    """
    return ConnectionManager(
        endpoint=settings.get('ledger_ws_url'),
        addresses=source_addresses(settings),
        router=router,
        store=store,
        notifier=notifier,
        reconnect_delay=settings['reconnect_delay'],
        reconnect_max_delay=settings['reconnect_max_delay'],
        jitter=settings['reconnect_jitter'],
        start_block=settings['start_block'],
        layouts=load_abi_layouts(settings.get('abi_dir')),
        request_timeout=settings['request_timeout'],
    )


# Export public interface
__all__ = [
    'monitor_ledger',
    'ConnectionManager',
    'ConnectionState',
    'EventRouter',
    'KeyedLock',
]
