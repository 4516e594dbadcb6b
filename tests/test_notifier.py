"""Tests for the in-process notifier."""

import pytest

from notifier import Notifier


@pytest.mark.asyncio
async def test_new_subscriber_gets_current_connection_state():
    notifier = Notifier()
    notifier.publish_connection('subscribed', sources=['registry'])

    queue = notifier.subscribe()
    message = queue.get_nowait()

    assert message['type'] == 'connection'
    assert message['data'] == {'state': 'subscribed', 'sources': ['registry']}
    assert 'timestamp' in message


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest():
    notifier = Notifier(queue_size=2)
    queue = notifier.subscribe()

    for n in range(3):
        notifier.publish('delta', {'n': n})

    assert [queue.get_nowait()['data']['n'] for _ in range(2)] == [1, 2]


@pytest.mark.asyncio
async def test_unsubscribe():
    notifier = Notifier()
    queue = notifier.subscribe()
    assert notifier.subscriber_count == 1

    notifier.unsubscribe(queue)
    notifier.publish('delta', {})
    assert notifier.subscriber_count == 0
    assert queue.empty()
