"""
Recovery sweep for windows whose timer was lost.

Any instance may run it. Each sweep scans the shared deadline set for windows
that are overdue by more than a grace period and flushes those that have no
local timer. Draining is atomic, so concurrent sweepers flush a window once.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from chatagg.buffer.pipeline import FlushPipeline
from chatagg.buffer.store import BufferStore, StorageError
from chatagg.buffer.timers import TimerCoordinator
from chatagg.utils.helpers import now_ms


DEFAULT_SWEEP_INTERVAL_S = 5.0
DEFAULT_SWEEP_GRACE_S = 10.0


class RecoverySweeper:
    """
    Periodic scan of overdue aggregation windows.

    Responsibilities:
        - Pick up windows orphaned by a crashed or restarted process
        - Leave windows with a live local timer alone
        - Survive storage outages (log and retry next tick)
    """

    def __init__(
        self,
        store: BufferStore,
        pipeline: FlushPipeline,
        timers: TimerCoordinator,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_S,
        grace_seconds: float = DEFAULT_SWEEP_GRACE_S,
    ):
        self.store = store
        self.pipeline = pipeline
        self.timers = timers
        self.interval_seconds = interval_seconds
        self.grace_seconds = grace_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.recovered = 0

    # ============================================================
    # Lifecycle
    # ============================================================

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="recovery-sweeper")

        logger.info(
            "Recovery sweeper started | interval={}s grace={}s",
            self.interval_seconds,
            self.grace_seconds,
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Recovery sweeper stopped")

    # ============================================================
    # Sweep Loop
    # ============================================================

    async def _sweep_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                try:
                    await self.sweep_once()
                except StorageError as e:
                    logger.warning("Recovery sweep skipped, store unavailable | err={}", e)
                except Exception:
                    logger.exception("Recovery sweep failed")
        except asyncio.CancelledError:
            pass

    async def sweep_once(self, grace_seconds: float | None = None) -> int:
        """
        Flush every overdue window without a local timer.

        Returns:
            Number of windows that produced a delivery job.
        """
        grace = self.grace_seconds if grace_seconds is None else grace_seconds
        cutoff = now_ms() - int(grace * 1000)

        flushed = 0
        for key in await self.store.due_keys(cutoff):
            if self.timers.is_armed(key) or self.timers.is_firing(key):
                continue

            logger.warning("Recovering orphaned window | key={}", key.member)
            job = await self.pipeline.flush(key)
            if job is not None:
                flushed += 1

        if flushed:
            self.recovered += flushed
            logger.info("Recovery sweep flushed {} window(s)", flushed)
        return flushed

    @property
    def is_running(self) -> bool:
        return self._running
