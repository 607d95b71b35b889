"""
Aggregation engine: the composition root of the debounce buffer.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from loguru import logger

from chatagg.bus.events import ConversationKey, Fragment
from chatagg.bus.queue import DeliveryDispatcher, DeliveryJob
from chatagg.buffer.pipeline import FlushPipeline
from chatagg.buffer.store import BufferStore
from chatagg.buffer.sweeper import RecoverySweeper
from chatagg.buffer.timers import TimerCoordinator
from chatagg.delivery.base import DeliveryClient
from chatagg.notify.base import Notifier


class AggregationEngine:
    """
    Public surface of the aggregation subsystem.

    ``add_fragment`` persists a fragment and arms a timer on the first
    fragment of a window. It never waits for the eventual flush.

    Example:
        engine = AggregationEngine.build(redis, client, window_seconds=20)
        await engine.start()
        await engine.add_fragment(ConversationKey(Channel.WEB, "u1"), Fragment("hello"))
    """

    def __init__(
        self,
        store: BufferStore,
        timers: TimerCoordinator,
        pipeline: FlushPipeline,
        dispatcher: DeliveryDispatcher,
        sweeper: Optional[RecoverySweeper] = None,
        max_buffer_size: int = 100,
        marker_grace_seconds: float = 5.0,
    ):
        if max_buffer_size < 1:
            raise ValueError("max_buffer_size must be >= 1")

        self.store = store
        self.timers = timers
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.sweeper = sweeper
        self.max_buffer_size = max_buffer_size
        self.marker_ttl = timers.window_seconds + marker_grace_seconds

        self.timers.on_fire = self._on_timer
        self.total_fragments = 0

    @classmethod
    def build(
        cls,
        redis: Any,
        client: DeliveryClient,
        notifier: Optional[Notifier] = None,
        *,
        window_seconds: float = 20.0,
        marker_grace_seconds: float = 5.0,
        max_buffer_size: int = 100,
        max_message_length: int = 10_000,
        separator: str = " ",
        key_prefix: str = "",
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        workers: int = 4,
        sweep_enabled: bool = True,
        sweep_interval_seconds: float = 5.0,
        sweep_grace_seconds: float = 10.0,
    ) -> "AggregationEngine":
        """Wire store, timers, dispatcher, pipeline and sweeper together."""
        store = BufferStore(redis, window_seconds=window_seconds, key_prefix=key_prefix)
        timers = TimerCoordinator(window_seconds)
        dispatcher = DeliveryDispatcher(
            client,
            notifier=notifier,
            max_attempts=max_attempts,
            backoff_base=backoff_base,
            backoff_max=backoff_max,
            workers=workers,
        )
        pipeline = FlushPipeline(
            store,
            dispatcher,
            notifier=notifier,
            separator=separator,
            max_length=max_message_length,
        )
        sweeper = None
        if sweep_enabled:
            sweeper = RecoverySweeper(
                store,
                pipeline,
                timers,
                interval_seconds=sweep_interval_seconds,
                grace_seconds=sweep_grace_seconds,
            )

        return cls(
            store,
            timers,
            pipeline,
            dispatcher,
            sweeper=sweeper,
            max_buffer_size=max_buffer_size,
            marker_grace_seconds=marker_grace_seconds,
        )

    # ==========================================================
    # Lifecycle
    # ==========================================================

    async def start(self) -> None:
        await self.dispatcher.start()
        if self.sweeper is not None:
            await self.sweeper.start()
        logger.info("Aggregation engine started | window={}s max_buffer={}", self.timers.window_seconds, self.max_buffer_size)

    async def stop(self, timeout: float | None = 10.0) -> None:
        """
        Cancel local timers without flushing, then drain pending deliveries.

        Fragments of unflushed windows stay in the store for the next sweep.
        """
        self.timers.cancel_all()
        if self.sweeper is not None:
            await self.sweeper.stop()
        await self.timers.wait_idle(timeout)
        await self.dispatcher.stop(timeout)
        logger.info("Aggregation engine stopped | fragments={}", self.total_fragments)

    # ==========================================================
    # Inbound
    # ==========================================================

    async def add_fragment(self, key: ConversationKey, fragment: Fragment) -> None:
        """
        Buffer one fragment.

        Raises:
            StorageError: the store failed; the fragment was not accepted.
        """
        # Each length RPUSH returns is seen by exactly one caller.
        length = await self.store.append(key, fragment)
        self.total_fragments += 1

        if length >= self.max_buffer_size:
            logger.warning(
                "Buffer full, flushing now | key={} size={}/{}",
                key.member,
                length,
                self.max_buffer_size,
            )
            await self.flush_now(key)
            return

        window_id = uuid.uuid4().hex
        if await self.store.mark_active(key, window_id, self.marker_ttl):
            self.timers.arm(key, window_id)
            logger.info("Window opened | key={} window={}", key.member, window_id)
        else:
            logger.debug("Fragment joined open window | key={} size={}", key.member, length)

    # ==========================================================
    # Flushing
    # ==========================================================

    async def flush_now(self, key: ConversationKey) -> DeliveryJob | None:
        """Flush a conversation immediately, discarding its local timer."""
        self.timers.cancel(key)
        return await self.pipeline.flush(key)

    async def sweep_now(self, grace_seconds: float | None = None) -> int:
        """Run one recovery sweep, even when the background sweeper is off."""
        if self.sweeper is not None:
            return await self.sweeper.sweep_once(grace_seconds)

        sweeper = RecoverySweeper(self.store, self.pipeline, self.timers, grace_seconds=0.0)
        return await sweeper.sweep_once(grace_seconds)

    async def _on_timer(self, key: ConversationKey, window_id: str) -> None:
        job = await self.pipeline.flush(key, window_id)
        if job is None:
            return
        outcome = await job.wait()
        logger.debug(
            "Window complete | key={} window={} status={} attempts={}",
            key.member,
            window_id,
            outcome.status,
            outcome.attempts,
        )

    # ==========================================================
    # Query API
    # ==========================================================

    def status(self) -> dict[str, Any]:
        return {
            "total_fragments": self.total_fragments,
            "max_buffer_size": self.max_buffer_size,
            "timers": self.timers.status(),
            "delivery": self.dispatcher.stats.as_dict(),
            "recovered": self.sweeper.recovered if self.sweeper else 0,
        }
