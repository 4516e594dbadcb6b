"""Tests for the HTTP and websocket API."""

import asyncio
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api import create_app
from notifier import Notifier
from projector import Projector
from query import QueryError, QueryGateway
from store.memory import MemoryStateStore
from conftest import ALICE, BOB, StepClock, make_event, mint


@pytest.fixture
def populated_store():
    store = MemoryStateStore()
    projector = Projector(store, clock=StepClock())

    async def populate():
        await projector.apply(mint(1, ALICE))
        await projector.apply(make_event('staking', 'TokenStaked', {'user': ALICE, 'tokenId': 1, 'value': 12_500_000}))
        await projector.apply(mint(2, BOB))
        await projector.apply(make_event('marketplace', 'ItemListed', {'seller': BOB, 'tokenId': 2, 'price': 400}))

    asyncio.run(populate())
    return store


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def client(populated_store, notifier):
    app = create_app(gateway=QueryGateway(populated_store), notifier=notifier)
    with TestClient(app) as test_client:
        yield test_client


def test_portfolio(client):
    response = client.get(f"/portfolio/{ALICE}")
    assert response.status_code == 200

    body = response.json()
    assert body['exists'] is True
    assert body['tickets'] == [{'token_id': 1, 'owner_address': ALICE, 'status': 'STAKED', 'price': 0}]
    assert body['listings'] == []
    stake, minted = body['transactions']
    assert stake['type'] == 'STAKE'
    assert Decimal(str(stake['amount'])) == Decimal('12.5')
    assert minted['type'] == 'MINT'
    assert minted['amount'] is None


def test_unknown_portfolio_is_empty(client):
    response = client.get('/portfolio/0x' + 'ee' * 20)
    assert response.status_code == 200
    assert response.json() == {
        'address': '0x' + 'ee' * 20,
        'exists': False,
        'tickets': [],
        'listings': [],
        'transactions': [],
    }


def test_market(client):
    response = client.get('/market')
    assert response.status_code == 200
    assert response.json() == [{
        'token_id': 2,
        'seller_address': BOB,
        'price': 400,
        'ticket': {'token_id': 2, 'owner_address': BOB, 'status': 'LISTED', 'price': 0},
    }]


def test_root_reports_connection_state(client, notifier):
    notifier.publish_connection('subscribed', sources=['registry'])
    body = client.get('/').json()
    assert body['connection']['data']['state'] == 'subscribed'


def test_events_websocket(client, notifier):
    notifier.publish_connection('connecting', endpoint='ws://node.test')

    with client.websocket_connect('/ws/events') as websocket:
        message = websocket.receive_json()
        assert message['type'] == 'connection'
        assert message['data'] == {'state': 'connecting', 'endpoint': 'ws://node.test'}

        websocket.send_json({'type': 'ping'})
        assert websocket.receive_json()['type'] == 'pong'


def test_store_unavailable():
    app = create_app()
    test_client = TestClient(app)
    assert test_client.get('/market').status_code == 503


class FailingGateway:

    async def get_portfolio(self, address):
        raise QueryError("store offline")

    async def get_active_listings(self):
        raise QueryError("store offline")


def test_query_errors_map_to_503():
    with TestClient(create_app(gateway=FailingGateway())) as test_client:
        response = test_client.get(f"/portfolio/{ALICE}")
        assert response.status_code == 503
        assert response.json()['detail'] == "store offline"
        assert test_client.get('/market').status_code == 503
