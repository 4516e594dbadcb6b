"""Shared fixtures: in-memory store, deterministic clock and event builders."""

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
import pytest_asyncio

from ledger.events import NULL_ADDRESS, LedgerEvent, find_spec
from projector import Projector
from store.memory import MemoryStateStore

ALICE = '0x' + 'a1' * 20
BOB = '0x' + 'b2' * 20
CAROL = '0x' + 'c3' * 20

ADDRESSES = {
    'registry': '0x' + '01' * 20,
    'staking': '0x' + '02' * 20,
    'lending': '0x' + '03' * 20,
    'marketplace': '0x' + '04' * 20,
    'oracle': '0x' + '05' * 20,
}

_tx_numbers = count(1)


def tx_hash(n=None) -> str:
    """A 32-byte transaction hash, unique per call unless n is given."""
    return '0x' + format(next(_tx_numbers) if n is None else n, '064x')


def make_event(source, name, args, block=1, log_index=0, tx=None, removed=False) -> LedgerEvent:
    return LedgerEvent(
        source=source,
        name=name,
        args=dict(args),
        tx_hash=tx or tx_hash(),
        block_number=block,
        log_index=log_index,
        removed=removed,
    )


def mint(token_id, owner=ALICE, **kwargs) -> LedgerEvent:
    return make_event('registry', 'Transfer', {'from': NULL_ADDRESS, 'to': owner, 'tokenId': token_id}, **kwargs)


def _word(kind, value) -> str:
    if kind == 'address':
        return value[2:].lower().rjust(64, '0')
    return format(value, '064x')


def encode_log(source, name, args, block=1, log_index=0, tx=None, indexed=None, removed=False) -> dict:
    """Build a raw JSON-RPC log; the first ``indexed`` params go in topics."""
    spec = find_spec(source, name)
    if indexed is None:
        indexed = len(spec.params) - 1
    topics = [spec.topic]
    data = ''
    for i, (param, kind) in enumerate(spec.params):
        word = _word(kind, args[param])
        if i < indexed:
            topics.append('0x' + word)
        else:
            data += word
    log = {
        'address': ADDRESSES[source],
        'topics': topics,
        'data': '0x' + data,
        'blockNumber': hex(block),
        'logIndex': hex(log_index),
        'transactionHash': tx or tx_hash(),
    }
    if removed:
        log['removed'] = True
    return log


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class StepClock:
    """Clock advancing one second per call."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def projector(store, clock):
    return Projector(store, decimals=6, clock=clock)


@pytest_asyncio.fixture
async def minted(projector):
    """Ticket 1 minted to ALICE."""
    await projector.apply(mint(1, ALICE))
    return 1
