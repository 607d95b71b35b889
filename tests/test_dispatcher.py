"""Tests for the background delivery dispatcher."""

import pytest

from chatagg.bus.events import CombinedMessage
from chatagg.bus.queue import FAILURE_NOTICE, DeliveryDispatcher
from chatagg.delivery.base import RetriableDeliveryError, TerminalDeliveryError


def make_message(key, text="hello"):
    return CombinedMessage(key=key, text=text, fragment_count=1)


def make_dispatcher(client, notifier=None, **kwargs):
    kwargs.setdefault("backoff_base", 0.001)
    kwargs.setdefault("backoff_max", 0.01)
    return DeliveryDispatcher(client, notifier=notifier, **kwargs)


@pytest.mark.asyncio
async def test_delivers_and_notifies_reply(client, notifier, key):
    dispatcher = make_dispatcher(client, notifier)
    await dispatcher.start()

    outcome = await dispatcher.submit(make_message(key)).wait()
    await dispatcher.stop()

    assert outcome.ok
    assert outcome.attempts == 1
    assert notifier.events == [(key.member, "ok:hello", "message")]
    assert dispatcher.stats.delivered == 1


@pytest.mark.asyncio
async def test_retries_retriable_errors(client, key):
    client.errors = [RetriableDeliveryError("503"), RetriableDeliveryError("timeout")]
    dispatcher = make_dispatcher(client)
    await dispatcher.start()

    outcome = await dispatcher.submit(make_message(key)).wait()
    await dispatcher.stop()

    assert outcome.ok
    assert outcome.attempts == 3
    assert dispatcher.stats.retries == 2
    assert len(client.messages) == 1


@pytest.mark.asyncio
async def test_terminal_error_stops_immediately(client, notifier, key):
    client.errors = [TerminalDeliveryError("400", status_code=400)]
    dispatcher = make_dispatcher(client, notifier)
    await dispatcher.start()

    outcome = await dispatcher.submit(make_message(key)).wait()
    await dispatcher.stop()

    assert outcome.status == "failed"
    assert outcome.attempts == 1
    assert client.calls == 1
    assert notifier.events == [(key.member, FAILURE_NOTICE, "error")]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(client, key):
    client.errors = [RetriableDeliveryError("down")] * 5
    dispatcher = make_dispatcher(client, max_attempts=3)
    await dispatcher.start()

    outcome = await dispatcher.submit(make_message(key)).wait()
    await dispatcher.stop()

    assert outcome.status == "failed"
    assert outcome.attempts == 3
    assert outcome.error == "down"
    assert dispatcher.stats.failed == 1
    assert dispatcher.stats.last_error["user_id"] == "u1"


@pytest.mark.asyncio
async def test_unexpected_errors_are_retried(client, key):
    client.errors = [RuntimeError("bug")]
    dispatcher = make_dispatcher(client)
    await dispatcher.start()

    outcome = await dispatcher.submit(make_message(key)).wait()
    await dispatcher.stop()

    assert outcome.ok
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_submit_requires_running(client, key):
    dispatcher = make_dispatcher(client)
    with pytest.raises(RuntimeError):
        dispatcher.submit(make_message(key))


def test_backoff_is_capped(client):
    dispatcher = DeliveryDispatcher(client, backoff_base=1.0, backoff_max=5.0)
    assert [dispatcher.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_rejects_zero_attempts(client):
    with pytest.raises(ValueError):
        DeliveryDispatcher(client, max_attempts=0)
