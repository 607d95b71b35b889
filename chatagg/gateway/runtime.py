"""
Gateway runtime: the explicit dependency graph of a running instance.

Everything the HTTP layer and the CLI need is built here once and passed
down. Nothing is a module-level singleton.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger
from redis.asyncio import Redis, from_url

from chatagg.buffer.engine import AggregationEngine
from chatagg.channels.manager import ChannelManager
from chatagg.config.schema import Config
from chatagg.delivery.base import DeliveryClient
from chatagg.delivery.webhook import WebhookDeliveryClient
from chatagg.llm.base import MediaTextProvider
from chatagg.llm.transcription import WhisperTranscriptionProvider
from chatagg.llm.vision import VisionTextProvider
from chatagg.notify.sse import SSEManager
from chatagg.utils.helpers import RuntimePaths


@dataclass(slots=True)
class Runtime:
    config: Config
    redis: Redis
    engine: AggregationEngine
    channels: ChannelManager
    notifier: SSEManager
    delivery: DeliveryClient
    paths: RuntimePaths
    owns_redis: bool = True
    _started: bool = field(default=False, repr=False)

    # =============================
    # Lifecycle
    # =============================

    async def startup(self) -> None:
        if self._started:
            return

        self.paths.ensure()
        if not await self.engine.store.ping():
            logger.warning("Redis not reachable at startup | url={}", self.config.redis.resolved_url)

        await self.engine.start()
        self._started = True
        logger.info("Runtime started | channels={}", ",".join(self.channels.enabled_channels))

    async def shutdown(self) -> None:
        if not self._started:
            return

        await self.engine.stop()
        await self.delivery.aclose()
        if self.owns_redis:
            await self.redis.aclose()

        self._started = False
        logger.info("Runtime stopped")

    @property
    def is_started(self) -> bool:
        return self._started

    async def health(self) -> dict[str, Any]:
        redis_up = await self.engine.store.ping()
        return {
            "status": "up" if redis_up else "down",
            "redis": "connected" if redis_up else "disconnected",
            "openai_configured": self.config.openai_configured,
            "webhook_configured": self.config.webhook_configured,
            "sse": self.notifier.stats(),
            "engine": self.engine.status(),
        }


def create_redis(config: Config) -> Redis:
    """Lazy client; no connection is made until the first command."""
    return from_url(
        config.redis.resolved_url,
        decode_responses=True,
        socket_timeout=config.redis.socket_timeout,
        socket_connect_timeout=config.redis.socket_timeout,
    )


def build_runtime(
    config: Config,
    redis: Optional[Redis] = None,
    delivery_client: Optional[DeliveryClient] = None,
    transcriber: Optional[MediaTextProvider] = None,
    vision: Optional[MediaTextProvider] = None,
    paths: Optional[RuntimePaths] = None,
) -> Runtime:
    """
    Wire a Runtime from config.

    Any collaborator may be injected (tests pass an in-memory Redis and a
    mock-transport delivery client).
    """
    owns_redis = redis is None
    redis = redis if redis is not None else create_redis(config)

    openai = config.providers.openai
    delivery = delivery_client or WebhookDeliveryClient(
        config.delivery.webhook_url,
        timeout=config.delivery.timeout_seconds,
    )
    notifier = SSEManager(keepalive_seconds=config.notifier.keepalive_seconds)

    agg = config.aggregation
    engine = AggregationEngine.build(
        redis,
        delivery,
        notifier,
        window_seconds=agg.window_seconds,
        marker_grace_seconds=agg.marker_grace_seconds,
        max_buffer_size=agg.max_buffer_size,
        max_message_length=agg.max_message_length,
        separator=agg.separator,
        key_prefix=config.redis.key_prefix,
        max_attempts=config.delivery.max_attempts,
        backoff_base=config.delivery.backoff_base_seconds,
        backoff_max=config.delivery.backoff_max_seconds,
        workers=config.delivery.workers,
        sweep_enabled=agg.sweep_enabled,
        sweep_interval_seconds=agg.sweep_interval_seconds,
        sweep_grace_seconds=agg.sweep_grace_seconds,
    )

    channels = ChannelManager(
        config,
        transcriber=transcriber or WhisperTranscriptionProvider(
            api_key=openai.api_key,
            api_base=openai.api_base,
            model=openai.transcription_model,
            prompt=openai.transcription_prompt,
        ),
        vision=vision or VisionTextProvider(
            api_key=openai.api_key,
            api_base=openai.api_base,
            model=openai.vision_model,
        ),
    )

    return Runtime(
        config=config,
        redis=redis,
        engine=engine,
        channels=channels,
        notifier=notifier,
        delivery=delivery,
        paths=paths or RuntimePaths.default(),
        owns_redis=owns_redis,
    )
