"""Tests for the HTTP webhook delivery client."""

import json

import httpx
import pytest

from chatagg.bus.events import CombinedMessage
from chatagg.delivery.webhook import WebhookDeliveryClient
from chatagg.delivery.base import RetriableDeliveryError, TerminalDeliveryError


URL = "https://hook.example.com/abc"


def client_for(handler) -> WebhookDeliveryClient:
    return WebhookDeliveryClient(URL, transport=httpx.MockTransport(handler))


@pytest.fixture
def message(key):
    return CombinedMessage(key=key, text="hola que tal", fragment_count=3)


@pytest.mark.asyncio
async def test_posts_payload_and_parses_json(message):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"reply": "Hi!"})

    client = client_for(handler)
    ack = await client.deliver(message)
    await client.aclose()

    assert seen["url"] == URL
    assert seen["body"] == {"user_id": "u1", "channel": "web", "text": "hola que tal"}
    assert ack.status_code == 200
    assert ack.reply_text == "Hi!"


@pytest.mark.asyncio
async def test_plain_text_body(message):
    client = client_for(lambda request: httpx.Response(200, text="Accepted"))
    ack = await client.deliver(message)
    await client.aclose()

    assert ack.body == "Accepted"
    assert ack.reply_text == "Accepted"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
async def test_retriable_statuses(message, status):
    client = client_for(lambda request: httpx.Response(status))
    with pytest.raises(RetriableDeliveryError) as exc:
        await client.deliver(message)
    await client.aclose()

    assert exc.value.status_code == status


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 404, 422])
async def test_terminal_statuses(message, status):
    client = client_for(lambda request: httpx.Response(status))
    with pytest.raises(TerminalDeliveryError):
        await client.deliver(message)
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_errors_are_retriable(message):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = client_for(handler)
    with pytest.raises(RetriableDeliveryError):
        await client.deliver(message)
    await client.aclose()


@pytest.mark.asyncio
async def test_timeouts_are_retriable(message):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = client_for(handler)
    with pytest.raises(RetriableDeliveryError):
        await client.deliver(message)
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_url_is_terminal(message):
    client = WebhookDeliveryClient("")
    assert client.is_configured is False
    with pytest.raises(TerminalDeliveryError):
        await client.deliver(message)
    await client.aclose()
