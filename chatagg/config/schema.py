"""
Configuration schema definitions.

Design principles:
    - Explicit structure
    - Predictable defaults
    - Environment override support
    - Strong typing + validation
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


# =============================
# Storage Config
# =============================

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class RedisConfig(BaseModel):
    """Buffer store connection. An empty url falls back to REDIS_URL, then localhost."""
    url: str = ""
    key_prefix: str = ""
    socket_timeout: float = 5.0

    @property
    def resolved_url(self) -> str:
        return self.url or DEFAULT_REDIS_URL


# =============================
# Aggregation Config
# =============================

class AggregationConfig(BaseModel):
    """Debounce window and buffer limits."""
    window_seconds: float = Field(default=20.0, gt=0)
    marker_grace_seconds: float = Field(default=5.0, ge=0)
    max_buffer_size: int = Field(default=100, ge=1)
    max_message_length: int = Field(default=10_000, ge=1)
    separator: str = " "

    sweep_enabled: bool = True
    sweep_interval_seconds: float = Field(default=5.0, gt=0)
    sweep_grace_seconds: float = Field(default=10.0, ge=0)


# =============================
# Delivery Config
# =============================

class DeliveryConfig(BaseModel):
    """Downstream automation webhook."""
    webhook_url: str = ""
    timeout_seconds: float = 30.0
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    workers: int = Field(default=4, ge=1)


# =============================
# Provider Config
# =============================

class OpenAIConfig(BaseModel):
    """OpenAI credentials and media models."""
    api_key: str = ""
    api_base: Optional[str] = None
    transcription_model: str = "whisper-1"
    transcription_prompt: str = ""
    vision_model: str = "gpt-4o-mini"


class ProvidersConfig(BaseModel):
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)


# =============================
# Channel Configurations
# =============================

class ChannelBaseConfig(BaseModel):
    """Base configuration for all channels."""
    enabled: bool = True
    allow_from: list[str] = Field(default_factory=list)


class WhatsAppConfig(ChannelBaseConfig):
    """WhatsApp Cloud API channel."""
    phone_number_id: str = ""


class ChannelsConfig(BaseModel):
    """Unified channel configuration root."""
    facebook: ChannelBaseConfig = Field(default_factory=ChannelBaseConfig)
    instagram: ChannelBaseConfig = Field(default_factory=ChannelBaseConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)
    web: ChannelBaseConfig = Field(default_factory=ChannelBaseConfig)


# =============================
# Gateway Config
# =============================

class GatewayConfig(BaseModel):
    """HTTP gateway configuration."""
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    max_payload_bytes: int = 1024 * 1024
    max_upload_bytes: int = 10 * 1024 * 1024


class NotifierConfig(BaseModel):
    """Real-time status stream."""
    keepalive_seconds: float = 30.0


# =============================
# Root Config
# =============================

# Unprefixed variables honoured when the matching field is left empty.
_ENV_FALLBACKS = {
    ("redis", "url"): "REDIS_URL",
    ("delivery", "webhook_url"): "MAKE_WEBHOOK_URL",
    ("providers", "openai", "api_key"): "OPENAI_API_KEY",
    ("channels", "whatsapp", "phone_number_id"): "WHATSAPP_PHONE_NUMBER_ID",
}


class Config(BaseSettings):
    """
    Root configuration schema.

    Priority:
        env > config.json > defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="CHATAGG_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)

    # -------------------------
    # Env integration
    # -------------------------

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Values from config.json arrive as init kwargs; env must win over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @model_validator(mode="after")
    def _apply_env_fallbacks(self) -> "Config":
        for path, env_name in _ENV_FALLBACKS.items():
            value = os.environ.get(env_name)
            if not value:
                continue

            *parents, attr = path
            target = self
            for name in parents:
                target = getattr(target, name)
            if not getattr(target, attr):
                setattr(target, attr, value)
        return self

    # -------------------------
    # Runtime helpers
    # -------------------------

    @property
    def marker_ttl_seconds(self) -> float:
        return self.aggregation.window_seconds + self.aggregation.marker_grace_seconds

    @property
    def openai_configured(self) -> bool:
        return bool(self.providers.openai.api_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self.delivery.webhook_url)
