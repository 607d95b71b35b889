"""Tests for configuration defaults, env overrides and JSON persistence."""

import json

import pytest

from chatagg.config.loader import camel_to_snake, load_config, save_config, snake_to_camel
from chatagg.config.schema import Config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("OPENAI_API_KEY", "REDIS_URL", "MAKE_WEBHOOK_URL", "WHATSAPP_PHONE_NUMBER_ID"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = Config()
    assert config.aggregation.window_seconds == 20.0
    assert config.aggregation.max_buffer_size == 100
    assert config.aggregation.max_message_length == 10_000
    assert config.marker_ttl_seconds == 25.0
    assert config.delivery.timeout_seconds == 30.0
    assert config.delivery.max_attempts == 3
    assert config.providers.openai.transcription_model == "whisper-1"
    assert config.webhook_configured is False


def test_nested_env_override(monkeypatch):
    monkeypatch.setenv("CHATAGG_AGGREGATION__WINDOW_SECONDS", "3.5")
    monkeypatch.setenv("CHATAGG_DELIVERY__WEBHOOK_URL", "https://hook.test")

    config = Config()

    assert config.aggregation.window_seconds == 3.5
    assert config.delivery.webhook_url == "https://hook.test"


def test_unprefixed_fallbacks(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("WHATSAPP_PHONE_NUMBER_ID", "999")
    monkeypatch.setenv("REDIS_URL", "redis://cache.internal:6380/2")
    monkeypatch.setenv("MAKE_WEBHOOK_URL", "https://hook.make.test")

    config = Config()

    assert config.providers.openai.api_key == "sk-env"
    assert config.channels.whatsapp.phone_number_id == "999"
    assert config.redis.resolved_url == "redis://cache.internal:6380/2"
    assert config.delivery.webhook_url == "https://hook.make.test"
    assert config.openai_configured


def test_redis_url_defaults_to_localhost():
    config = Config()
    assert config.redis.url == ""
    assert config.redis.resolved_url == "redis://localhost:6379/0"


def test_saved_default_config_still_honours_redis_url(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    save_config(Config(), path)
    monkeypatch.setenv("REDIS_URL", "redis://cache.internal:6380/2")

    assert load_config(path).redis.resolved_url == "redis://cache.internal:6380/2"


def test_explicit_redis_url_beats_fallback(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"redis": {"url": "redis://file.test:6379/1"}}))
    monkeypatch.setenv("REDIS_URL", "redis://cache.internal:6380/2")

    assert load_config(path).redis.resolved_url == "redis://file.test:6379/1"


def test_load_camel_case_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "aggregation": {"windowSeconds": 8, "maxBufferSize": 10},
        "delivery": {"webhookUrl": "https://file.test"},
        "channels": {"facebook": {"allowFrom": ["1", "2"]}},
    }))

    config = load_config(path)

    assert config.aggregation.window_seconds == 8
    assert config.aggregation.max_buffer_size == 10
    assert config.delivery.webhook_url == "https://file.test"
    assert config.channels.facebook.allow_from == ["1", "2"]


def test_env_beats_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"aggregation": {"windowSeconds": 8, "maxBufferSize": 10}}))
    monkeypatch.setenv("CHATAGG_AGGREGATION__WINDOW_SECONDS", "2")

    config = load_config(path)

    assert config.aggregation.window_seconds == 2
    assert config.aggregation.max_buffer_size == 10


def test_invalid_files_fall_back_to_defaults(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"aggregation": {"maxBufferSize": 0}}))

    assert load_config(broken).aggregation.max_buffer_size == 100
    assert load_config(invalid).aggregation.max_buffer_size == 100
    assert load_config(tmp_path / "missing.json").aggregation.window_seconds == 20.0


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = Config()
    config.aggregation.window_seconds = 12.0

    save_config(config, path)
    on_disk = json.loads(path.read_text())

    assert on_disk["aggregation"]["windowSeconds"] == 12.0
    assert load_config(path).aggregation.window_seconds == 12.0


def test_key_conversion():
    assert camel_to_snake("maxBufferSize") == "max_buffer_size"
    assert snake_to_camel("max_buffer_size") == "maxBufferSize"
