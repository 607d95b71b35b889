"""Tests for the HTTP gateway routes."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatagg.buffer.store import StorageError
from chatagg.config.schema import Config
from chatagg.gateway.app import create_app
from chatagg.gateway.runtime import build_runtime
from chatagg.llm.base import MediaTextProvider
from chatagg.utils.helpers import RuntimePaths


class StubTranscriber(MediaTextProvider):
    def __init__(self):
        super().__init__(api_key="sk-test")
        self.sources: list[str] = []

    async def extract(self, source: str) -> str:
        self.sources.append(source)
        return "spoken words"


@pytest.fixture
def config(monkeypatch):
    monkeypatch.delenv("WHATSAPP_PHONE_NUMBER_ID", raising=False)
    config = Config()
    config.aggregation.window_seconds = 0.2
    config.aggregation.sweep_enabled = False
    config.delivery.backoff_base_seconds = 0.01
    config.channels.whatsapp.phone_number_id = "999"
    return config


@pytest_asyncio.fixture
async def runtime(config, redis, client, tmp_path):
    runtime = build_runtime(
        config,
        redis=redis,
        delivery_client=client,
        transcriber=StubTranscriber(),
        paths=RuntimePaths(tmp_path / "home"),
    )
    await runtime.startup()
    yield runtime
    await runtime.shutdown()


@pytest_asyncio.fixture
async def http(config, runtime):
    app = create_app(config, runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def settle(runtime) -> None:
    await asyncio.sleep(0.3)
    await runtime.engine.timers.wait_idle(2.0)
    await runtime.engine.dispatcher.queue.join()


WEB_TEXT = {"channel": "web", "user_id": "u1", "type": "text", "text": "hola"}


class TestWebhook:
    @pytest.mark.asyncio
    async def test_burst_is_aggregated(self, http, runtime, client):
        first = await http.post("/webhook", json=WEB_TEXT)
        await http.post("/webhook", json={**WEB_TEXT, "text": "que tal"})

        assert first.status_code == 200
        body = first.json()
        assert body["status"] == "processing"
        assert body["sse_endpoint"] == "/webhook/sse/u1?channel=web"
        assert (body["user_id"], body["channel"], body["type"]) == ("u1", "web", "text")

        await settle(runtime)
        assert [m.text for m in client.messages] == ["hola que tal"]

    @pytest.mark.asyncio
    async def test_whatsapp_payload(self, http, runtime, client):
        payload = {
            "object": "whatsapp_business_account",
            "entry": [{"changes": [{"value": {
                "contacts": [{"wa_id": "5491100"}],
                "messages": [{"from": "5491100", "type": "text", "text": {"body": "buenas"}}],
            }}]}],
        }

        resp = await http.post("/webhook", json=payload)

        assert resp.json()["channel"] == "whatsapp"
        await settle(runtime)
        assert client.messages[0].to_payload() == {"user_id": "5491100", "channel": "whatsapp", "text": "buenas"}

    @pytest.mark.asyncio
    async def test_echo_is_filtered(self, http):
        payload = {
            "object": "whatsapp_business_account",
            "entry": [{"changes": [{"value": {
                "messages": [{"from": "999", "type": "text", "text": {"body": "our own reply"}}],
            }}]}],
        }

        resp = await http.post("/webhook", json=payload)

        assert resp.status_code == 200
        assert resp.json() == {"status": "filtered"}

    @pytest.mark.asyncio
    async def test_unknown_platform_is_filtered(self, http):
        resp = await http.post("/webhook", json={"hello": "world"})
        assert resp.json() == {"status": "filtered"}

    @pytest.mark.asyncio
    async def test_empty_payload(self, http):
        assert (await http.post("/webhook", json={})).status_code == 400
        assert (await http.post("/webhook", content=b"", headers={"content-type": "application/json"})).status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, http):
        resp = await http.post("/webhook", content=b"{oops", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_payload_too_large(self, http, config):
        config.gateway.max_payload_bytes = 64
        resp = await http.post("/webhook", json={**WEB_TEXT, "text": "x" * 200})
        assert resp.status_code == 413

    @pytest.mark.asyncio
    async def test_invalid_web_payload(self, http):
        resp = await http.post("/webhook", json={"channel": "web", "user_id": "u1", "type": "text"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_storage_outage_returns_503(self, http, runtime):
        with patch.object(runtime.engine, "add_fragment", AsyncMock(side_effect=StorageError("down"))):
            resp = await http.post("/webhook", json=WEB_TEXT)
        assert resp.status_code == 503


class TestUploads:
    @pytest.mark.asyncio
    async def test_audio_upload_is_transcribed_and_removed(self, http, runtime, client):
        resp = await http.post(
            "/webhook",
            data={"channel": "web", "user_id": "u1"},
            files={"file": ("note.ogg", b"OggS", "audio/ogg")},
        )

        assert resp.status_code == 200
        assert resp.json()["type"] == "audio"

        stored = runtime.channels.transcriber.sources[0]
        assert stored.endswith(".ogg")
        assert not list((runtime.paths.uploads).iterdir())

        await settle(runtime)
        assert client.messages[0].text == "[audio] spoken words"

    @pytest.mark.asyncio
    async def test_non_media_upload_is_rejected(self, http):
        resp = await http.post(
            "/webhook",
            data={"channel": "web", "user_id": "u1"},
            files={"file": ("doc.pdf", b"%PDF", "application/pdf")},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_oversized_upload(self, http, config):
        config.gateway.max_upload_bytes = 8
        resp = await http.post(
            "/webhook",
            data={"channel": "web", "user_id": "u1"},
            files={"file": ("big.png", b"0" * 64, "image/png")},
        )
        assert resp.status_code == 413


class TestOperations:
    @pytest.mark.asyncio
    async def test_health_up(self, http):
        resp = await http.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "up"
        assert body["redis"] == "connected"
        assert body["pending_windows"] == 0

    @pytest.mark.asyncio
    async def test_health_down(self, http, runtime):
        with patch.object(runtime.engine.store, "ping", AsyncMock(return_value=False)):
            resp = await http.get("/health")

        assert resp.status_code == 503
        assert resp.json()["status"] == "down"

    @pytest.mark.asyncio
    async def test_health_down_when_redis_drops_after_ping(self, http, runtime):
        failing = AsyncMock(side_effect=StorageError("pending count failed"))
        with patch.object(runtime.engine.store, "pending_count", failing):
            resp = await http.get("/health")

        assert resp.status_code == 503
        body = resp.json()
        assert (body["status"], body["redis"]) == ("down", "disconnected")
        assert "pending_windows" not in body

    @pytest.mark.asyncio
    async def test_process_buffer(self, http):
        resp = await http.post("/cron/process-buffer")
        assert resp.json() == {"status": "ok", "flushed": 0}

    @pytest.mark.asyncio
    async def test_sse_rejects_unknown_channel(self, http):
        resp = await http.get("/webhook/sse/u1", params={"channel": "telegram"})
        assert resp.status_code == 400
