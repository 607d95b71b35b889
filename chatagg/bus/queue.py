"""
Background delivery queue for combined messages.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from chatagg.bus.events import CombinedMessage, DeliveryOutcome
from chatagg.delivery.base import DeliveryClient, DeliveryError
from chatagg.notify.base import Notifier
from chatagg.utils.helpers import now_iso


FAILURE_NOTICE = "Sorry, we could not process your message. Please try again."
SUCCESS_NOTICE = "Message processed"


@dataclass(slots=True)
class DeliveryJob:
    """
    One combined message travelling through the dispatcher.

    ``done`` resolves to a DeliveryOutcome once the job succeeds or its
    retries are exhausted.
    """

    message: CombinedMessage
    done: asyncio.Future
    attempts: int = 0

    async def wait(self) -> DeliveryOutcome:
        return await asyncio.shield(self.done)

    @property
    def outcome(self) -> DeliveryOutcome | None:
        if self.done.done() and not self.done.cancelled():
            return self.done.result()
        return None


@dataclass(slots=True)
class DispatcherStats:
    submitted: int = 0
    delivered: int = 0
    failed: int = 0
    retries: int = 0
    last_error: Optional[dict[str, Any]] = None
    last_processed: Optional[dict[str, Any]] = None
    in_flight: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "submitted": self.submitted,
            "delivered": self.delivered,
            "failed": self.failed,
            "retries": self.retries,
            "in_flight": self.in_flight,
            "last_error": self.last_error,
            "last_processed": self.last_processed,
        }


class DeliveryDispatcher:
    """
    Async delivery queue decoupling flushes from the downstream call.

    Architecture:
        FlushPipeline -> queue -> workers -> DeliveryClient
                                         -> Notifier (final outcome)

    Guarantees:
        - A job is delivered at most once (no retry after success)
        - Bounded exponential backoff between attempts
        - Terminal errors stop the retry loop immediately
        - Worker failures never kill the dispatcher
    """

    def __init__(
        self,
        client: DeliveryClient,
        notifier: Notifier | None = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        workers: int = 4,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.client = client
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.worker_count = max(1, workers)

        self.queue: asyncio.Queue[DeliveryJob] = asyncio.Queue()
        self.stats = DispatcherStats()

        self._workers: list[asyncio.Task] = []
        self._running = False

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"delivery-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Delivery dispatcher started | workers={}", self.worker_count)

    async def stop(self, timeout: float | None = 10.0) -> None:
        """Wait for queued jobs (bounded by ``timeout``) then stop workers."""
        if not self._running:
            return

        try:
            await asyncio.wait_for(self.queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery dispatcher stop timed out | pending={}",
                self.queue.qsize(),
            )

        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

        logger.info("Delivery dispatcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ---------------------------------------------------------------------
    # Submission
    # ---------------------------------------------------------------------

    def submit(self, message: CombinedMessage) -> DeliveryJob:
        """Queue a message for delivery and return its job handle."""
        if not self._running:
            raise RuntimeError("Delivery dispatcher is not running")

        job = DeliveryJob(
            message=message,
            done=asyncio.get_running_loop().create_future(),
        )
        self.queue.put_nowait(job)
        self.stats.submitted += 1
        return job

    # ---------------------------------------------------------------------
    # Workers
    # ---------------------------------------------------------------------

    async def _worker_loop(self, index: int) -> None:
        logger.debug("Delivery worker {} started", index)

        while True:
            job = await self.queue.get()
            self.stats.in_flight += 1
            try:
                outcome = await self._deliver_with_retry(job)
                if not job.done.done():
                    job.done.set_result(outcome)
                await self._notify_outcome(job.message, outcome)
            except asyncio.CancelledError:
                if not job.done.done():
                    job.done.cancel()
                raise
            except Exception as e:
                logger.exception("Delivery worker error | key={}", job.message.key.member)
                if not job.done.done():
                    job.done.set_result(
                        DeliveryOutcome(status="failed", attempts=job.attempts, error=str(e))
                    )
            finally:
                self.stats.in_flight -= 1
                self.queue.task_done()

    async def _deliver_with_retry(self, job: DeliveryJob) -> DeliveryOutcome:
        message = job.message
        last_error: str | None = None

        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                ack = await self.client.deliver(message)
            except DeliveryError as e:
                last_error = str(e)
                if not e.retriable:
                    logger.error(
                        "Delivery failed (terminal) | key={} attempt={} err={}",
                        message.key.member,
                        job.attempts,
                        e,
                    )
                    break
                logger.warning(
                    "Delivery attempt failed | key={} attempt={}/{} err={}",
                    message.key.member,
                    job.attempts,
                    self.max_attempts,
                    e,
                )
            except Exception as e:
                last_error = str(e)
                logger.exception(
                    "Delivery attempt crashed | key={} attempt={}",
                    message.key.member,
                    job.attempts,
                )
            else:
                self._record_success(message, job.attempts)
                return DeliveryOutcome(
                    status="delivered",
                    attempts=job.attempts,
                    response=ack,
                )

            if job.attempts < self.max_attempts:
                self.stats.retries += 1
                await asyncio.sleep(self.backoff_delay(job.attempts))

        self._record_failure(message, job.attempts, last_error)
        return DeliveryOutcome(status="failed", attempts=job.attempts, error=last_error)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    # ---------------------------------------------------------------------
    # Bookkeeping
    # ---------------------------------------------------------------------

    def _record_success(self, message: CombinedMessage, attempts: int) -> None:
        self.stats.delivered += 1
        self.stats.last_processed = {
            "timestamp": now_iso(),
            "channel": message.key.channel.value,
            "user_id": message.key.user_id,
            "message_count": message.fragment_count,
            "attempts": attempts,
        }
        logger.success(
            "Delivered | key={} fragments={} attempts={}",
            message.key.member,
            message.fragment_count,
            attempts,
        )

    def _record_failure(self, message: CombinedMessage, attempts: int, error: str | None) -> None:
        self.stats.failed += 1
        self.stats.last_error = {
            "timestamp": now_iso(),
            "channel": message.key.channel.value,
            "user_id": message.key.user_id,
            "error": error,
        }
        logger.error(
            "Delivery gave up | key={} attempts={} err={}",
            message.key.member,
            attempts,
            error,
        )

    async def _notify_outcome(self, message: CombinedMessage, outcome: DeliveryOutcome) -> None:
        if self.notifier is None:
            return

        if outcome.ok:
            reply = getattr(outcome.response, "reply_text", None)
            text, kind = reply or SUCCESS_NOTICE, "message"
        else:
            text, kind = FAILURE_NOTICE, "error"

        try:
            await self.notifier.notify(message.key, text, kind)
        except Exception:
            logger.exception("Notifier failed | key={}", message.key.member)

    # ---------------------------------------------------------------------
    # Metrics
    # ---------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return self.queue.qsize()
