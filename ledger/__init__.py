"""Ledger module for talking to an EVM node over websocket JSON-RPC.

Provides the ``LedgerClient`` used by the monitor to subscribe to contract
logs (``eth_subscribe``), fetch historical logs for checkpoint replay
(``eth_getLogs``) and read the current head (``eth_blockNumber``).
"""
import asyncio
import itertools
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import websockets

from .events import (
    NULL_ADDRESS,
    SOURCES,
    CATALOGUE,
    EventSpec,
    LedgerEvent,
    MalformedLogError,
    decode_log,
    events_for_source,
    load_abi_layouts,
)

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger communication errors"""
    pass


class TransportError(LedgerError):
    """Raised when the websocket is unreachable, closed or times out"""
    pass


class LedgerRPCError(LedgerError):
    """Raised when the node answers with a JSON-RPC error object

    Common error codes:
    -32600 - Invalid request
    -32601 - Method not found
    -32602 - Invalid params
    -32603 - Internal error
    -32005 - Limit exceeded (e.g. too many logs in one eth_getLogs range)
    """
    ERROR_MESSAGES = {
        -32600: "Invalid request",
        -32601: "Method not found",
        -32602: "Invalid params",
        -32603: "Internal error",
        -32005: "Limit exceeded",
    }

    def __init__(self, message: str, code: int, method: str):
        self.code = code
        self.method = method
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown error")
        full_msg = f"{standard_msg} - {message}" if message != standard_msg else message
        super().__init__(f"RPC Error [{code}] in {method}: {full_msg}")


# Sentinel placed on the notification queue when the socket goes away
_CLOSED = object()


class LedgerClient:
    """Websocket JSON-RPC client for one ledger node connection.

    A background reader task resolves request futures by id and queues
    subscription notifications, so notifications that arrive while a
    request (e.g. replay via eth_getLogs) is outstanding are buffered.
    """

    def __init__(self, url: str, request_timeout: float = 10.0):
        self.url = url
        self.request_timeout = request_timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, Tuple[str, asyncio.Future]] = {}
        self._notifications: asyncio.Queue = asyncio.Queue()
        self._closed_reason: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._closed_reason is None

    async def connect(self) -> None:
        """Open the websocket and start the reader task.

        Raises:
            TransportError: If the node can't be reached
        """
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.url, max_size=None),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {self.url}") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Failed to connect to {self.url}: {e}") from e

        self._closed_reason = None
        self._reader = asyncio.create_task(self._read_loop(), name="ledger-reader")
        logger.info(f"Connected to ledger at {self.url}")

    async def close(self) -> None:
        """Close the websocket and fail anything still waiting on it."""
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing ledger socket: {e}")
            self._ws = None
        self._fail_all("client closed")

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"Ignoring non-JSON message from ledger: {raw!r:.200}")
                    continue
                if not isinstance(message, dict):
                    logger.warning(f"Ignoring non-object message from ledger: {raw!r:.200}")
                    continue
                self._route_message(message)
            self._fail_all("connection closed by peer")
        except websockets.exceptions.ConnectionClosed as e:
            self._fail_all(f"connection closed ({e})")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Ledger reader failed: {type(e).__name__}: {e}")
            self._fail_all(f"reader failed ({type(e).__name__}: {e})")

    def _route_message(self, message: Dict[str, Any]) -> None:
        if message.get('method') == 'eth_subscription':
            params = message.get('params')
            if not isinstance(params, dict):
                logger.warning(f"Ignoring subscription message without params: {message!r:.200}")
                return
            self._notifications.put_nowait((params.get('subscription'), params.get('result')))
            return

        request_id = message.get("id")
        if not isinstance(request_id, int):
            logger.debug(f"Ignoring message without a request id: {message!r:.200}")
            return
        method, future = self._pending.pop(request_id, (None, None))
        if future is None or future.done():
            return
        error = message.get('error')
        if isinstance(error, dict):
            code = error.get('code', -1)
            future.set_exception(LedgerRPCError(
                str(error.get('message', 'Unknown error')),
                code if isinstance(code, int) else -1,
                method
            ))
        elif error:
            future.set_exception(LedgerRPCError(str(error), -1, method))
        else:
            future.set_result(message.get('result'))

    def _fail_all(self, reason: str) -> None:
        if self._closed_reason is None:
            self._closed_reason = reason
            self._notifications.put_nowait(_CLOSED)
        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(f"Ledger {reason}"))
        self._pending.clear()

    async def call(self, method: str, *params) -> Any:
        """Make a JSON-RPC call and wait for its result.

        Raises:
            TransportError: Socket closed or the call timed out
            LedgerRPCError: Node returned an error object
        """
        if not self.connected:
            raise TransportError(f"Ledger not connected ({self._closed_reason or 'never opened'})")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)

        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": list(params),
        }
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{method} timed out after {self.request_timeout} seconds"
            ) from e
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Connection closed during {method}") from e
        finally:
            self._pending.pop(request_id, None)

    async def block_number(self) -> int:
        return int(await self.call('eth_blockNumber'), 16)

    async def subscribe_logs(self, address: str, topics: Optional[List[str]] = None) -> str:
        """Subscribe to logs of one contract; returns the subscription id."""
        criteria: Dict[str, Any] = {'address': address}
        if topics:
            criteria['topics'] = [topics]
        return await self.call('eth_subscribe', 'logs', criteria)

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Fetch historical logs for one contract in an inclusive block range."""
        criteria: Dict[str, Any] = {
            'address': address,
            'fromBlock': hex(from_block),
            'toBlock': hex(to_block),
        }
        if topics:
            criteria['topics'] = [topics]
        return await self.call('eth_getLogs', criteria) or []

    async def notifications(self) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(subscription_id, log)`` pairs until the socket closes.

        Raises:
            TransportError: When the connection is lost
        """
        while True:
            item = await self._notifications.get()
            if item is _CLOSED:
                raise TransportError(f"Ledger {self._closed_reason}")
            yield item


__all__ = [
    'LedgerClient',
    'LedgerError',
    'TransportError',
    'LedgerRPCError',
    'NULL_ADDRESS',
    'SOURCES',
    'CATALOGUE',
    'EventSpec',
    'LedgerEvent',
    'MalformedLogError',
    'decode_log',
    'events_for_source',
    'load_abi_layouts',
]
