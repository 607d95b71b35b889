"""Shared fixtures: in-memory Redis and recording collaborators."""

from __future__ import annotations

import fakeredis
import pytest
import pytest_asyncio

from chatagg.bus.events import Channel, CombinedMessage, ConversationKey
from chatagg.delivery.base import DeliveryAck, DeliveryClient
from chatagg.notify.base import Notifier


class RecordingClient(DeliveryClient):
    """Delivery client that records messages and raises queued errors first."""

    def __init__(self, errors=None):
        self.errors = list(errors or [])
        self.messages: list[CombinedMessage] = []
        self.calls = 0
        self.closed = False

    async def deliver(self, message: CombinedMessage) -> DeliveryAck:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        self.messages.append(message)
        return DeliveryAck(status_code=200, body={"reply": f"ok:{message.text}"})

    async def aclose(self) -> None:
        self.closed = True


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events: list[tuple[str, str, str]] = []

    async def notify(self, key, text, kind="status") -> bool:
        self.events.append((key.member, text, kind))
        return True

    def kinds(self) -> list[str]:
        return [kind for _, _, kind in self.events]


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def key():
    return ConversationKey(Channel.WEB, "u1")
