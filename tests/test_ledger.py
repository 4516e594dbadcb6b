"""Tests for the websocket JSON-RPC client against an in-memory socket."""

import asyncio
import json

import pytest
import pytest_asyncio
import websockets

from ledger import LedgerClient, LedgerRPCError, TransportError
from conftest import eventually


class FakeSocket:
    """Websocket stand-in: records sent requests and replays pushed frames.

    Pushing None ends the stream as a peer close would; pushing an
    exception makes the next read raise it.
    """

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, frame):
        self.incoming.put_nowait(frame)

    def reply(self, request, **fields):
        self.push(dict({'jsonrpc': '2.0', 'id': request['id']}, **fields))

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.incoming.get()
        if frame is None:
            raise StopAsyncIteration
        if isinstance(frame, Exception):
            raise frame
        return frame if isinstance(frame, str) else json.dumps(frame)


def notification(subscription, result):
    return {
        'jsonrpc': '2.0',
        'method': 'eth_subscription',
        'params': {'subscription': subscription, 'result': result},
    }


@pytest.fixture
def socket(monkeypatch):
    socket = FakeSocket()

    async def connect(url, **kwargs):
        return socket

    monkeypatch.setattr(websockets, 'connect', connect)
    return socket


@pytest_asyncio.fixture
async def client(socket):
    client = LedgerClient('ws://node.test', request_timeout=1.0)
    await client.connect()
    yield client
    await client.close()


async def next_notification(client):
    return await asyncio.wait_for(client.notifications().__anext__(), timeout=1)


@pytest.mark.asyncio
async def test_responses_are_matched_by_id(client, socket):
    head = asyncio.create_task(client.block_number())
    logs = asyncio.create_task(client.get_logs('0xabc', 5, 9))
    await eventually(lambda: len(socket.sent) == 2)

    head_request, logs_request = socket.sent
    assert head_request['method'] == 'eth_blockNumber'
    assert logs_request['params'] == [{'address': '0xabc', 'fromBlock': '0x5', 'toBlock': '0x9'}]

    # Answered out of order
    socket.reply(logs_request, result=[{'logIndex': '0x0'}])
    socket.reply(head_request, result='0x1f')

    assert await head == 31
    assert await logs == [{'logIndex': '0x0'}]


@pytest.mark.asyncio
async def test_error_object_raises_rpc_error(client, socket):
    call = asyncio.create_task(client.get_logs('0xabc', 0, 100000))
    await eventually(lambda: socket.sent)
    socket.reply(socket.sent[0], error={'code': -32005, 'message': 'query returned more than 10000 results'})

    with pytest.raises(LedgerRPCError) as info:
        await call
    assert info.value.code == -32005
    assert info.value.method == 'eth_getLogs'
    assert client.connected


@pytest.mark.asyncio
async def test_notifications_during_a_call_are_buffered(client, socket):
    call = asyncio.create_task(client.get_logs('0xabc', 0, 10))
    await eventually(lambda: socket.sent)
    socket.push(notification('0x1', {'blockNumber': '0xb'}))
    socket.reply(socket.sent[0], result=[])

    assert await call == []
    assert await next_notification(client) == ('0x1', {'blockNumber': '0xb'})


@pytest.mark.asyncio
async def test_unanswered_call_times_out(client, socket):
    client.request_timeout = 0.05
    with pytest.raises(TransportError, match='timed out'):
        await client.call('eth_blockNumber')

    # A late answer is ignored and the connection stays usable
    socket.reply(socket.sent[0], result='0x1')
    client.request_timeout = 1.0
    call = asyncio.create_task(client.block_number())
    await eventually(lambda: len(socket.sent) == 2)
    socket.reply(socket.sent[1], result='0x2')
    assert await call == 2


@pytest.mark.asyncio
async def test_close_fails_pending_calls_and_notifications(client, socket):
    call = asyncio.create_task(client.call('eth_blockNumber'))
    await eventually(lambda: socket.sent)

    await client.close()

    with pytest.raises(TransportError, match='client closed'):
        await call
    with pytest.raises(TransportError):
        await next_notification(client)
    with pytest.raises(TransportError, match='not connected'):
        await client.call('eth_blockNumber')
    assert socket.closed


@pytest.mark.asyncio
async def test_peer_close_fails_pending_calls(client, socket):
    call = asyncio.create_task(client.call('eth_blockNumber'))
    await eventually(lambda: socket.sent)
    socket.push(None)

    with pytest.raises(TransportError, match='closed by peer'):
        await call
    with pytest.raises(TransportError):
        await next_notification(client)
    assert not client.connected


@pytest.mark.asyncio
async def test_unexpected_message_shapes_are_ignored(client, socket):
    call = asyncio.create_task(client.get_logs('0xabc', 0, 10))
    await eventually(lambda: socket.sent)

    socket.push('not json')
    socket.push('[1, 2, 3]')
    socket.push('"just a string"')
    socket.push({'jsonrpc': '2.0', 'method': 'eth_subscription', 'params': 'oops'})
    socket.push({'jsonrpc': '2.0', 'id': [1], 'result': '0x1'})
    socket.push({'jsonrpc': '2.0', 'id': 'abc', 'result': '0x1'})
    socket.push(notification('0x1', {'blockNumber': '0xc'}))
    # Some nodes send a bare string as the error
    socket.reply(socket.sent[0], error='rate limited')

    with pytest.raises(LedgerRPCError, match='rate limited') as info:
        await call
    assert info.value.code == -1
    assert client.connected
    assert await next_notification(client) == ('0x1', {'blockNumber': '0xc'})


@pytest.mark.asyncio
async def test_reader_failure_closes_the_client(client, socket):
    call = asyncio.create_task(client.call('eth_blockNumber'))
    await eventually(lambda: socket.sent)
    socket.push(RuntimeError('frame decoding failed'))

    with pytest.raises(TransportError, match='reader failed'):
        await call
    with pytest.raises(TransportError, match='reader failed'):
        await next_notification(client)
    assert not client.connected
