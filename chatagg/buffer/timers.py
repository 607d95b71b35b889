"""
Per-conversation flush timers.

State machine per conversation member:

    Idle --arm--> Armed --elapsed--> Firing --callback done--> Idle

The first fragment of a window starts the clock; later fragments never
extend or reset it.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from chatagg.bus.events import ConversationKey


FireCallback = Callable[[ConversationKey, str], Awaitable[None]]


class TimerCoordinator:
    """
    Exactly-once local scheduling of a flush per aggregation window.

    Timers live in process memory; they are a cache of scheduling intent.
    Losing them (crash, cancel_all) loses no fragments, only timeliness.
    """

    def __init__(self, window_seconds: float, on_fire: Optional[FireCallback] = None):
        self.window_seconds = window_seconds
        self.on_fire = on_fire

        self._armed: dict[str, tuple[str, asyncio.Task]] = {}
        self._firing: dict[str, tuple[str, asyncio.Task]] = {}

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    def arm(self, key: ConversationKey, window_id: str) -> bool:
        """
        Schedule the one-shot flush for a freshly opened window.

        Returns:
            False when the key is already Armed, or Firing the same window.
        """
        member = key.member

        if member in self._armed:
            logger.debug("Timer already armed | key={}", member)
            return False

        firing = self._firing.get(member)
        if firing and firing[0] == window_id:
            logger.debug("Window already firing | key={} window={}", member, window_id)
            return False

        task = asyncio.create_task(
            self._run(key, window_id),
            name=f"flush-timer-{member}",
        )
        self._armed[member] = (window_id, task)

        logger.info("Timer armed | key={} window={} delay={}s", member, window_id, self.window_seconds)
        return True

    async def _run(self, key: ConversationKey, window_id: str) -> None:
        member = key.member

        await asyncio.sleep(self.window_seconds)

        entry = self._armed.get(member)
        if entry is None or entry[0] != window_id:
            return

        del self._armed[member]
        self._firing[member] = entry
        logger.debug("Timer fired | key={} window={}", member, window_id)

        try:
            if self.on_fire is not None:
                await self.on_fire(key, window_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Flush callback failed | key={} window={}", member, window_id)
        finally:
            current = self._firing.get(member)
            if current is not None and current[0] == window_id:
                del self._firing[member]

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, key: ConversationKey) -> bool:
        """Cancel an armed timer without flushing."""
        entry = self._armed.pop(key.member, None)
        if entry is None:
            return False

        entry[1].cancel()
        logger.debug("Timer cancelled | key={} window={}", key.member, entry[0])
        return True

    def cancel_all(self) -> int:
        """
        Cancel every armed timer without flushing.

        Buffered fragments stay in the store for the recovery sweep.
        """
        count = len(self._armed)
        for _, task in self._armed.values():
            task.cancel()
        self._armed.clear()

        logger.info("Cancelled {} active timer(s)", count)
        return count

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait for in-flight flush callbacks to finish."""
        tasks = [task for _, task in self._firing.values()]
        if not tasks:
            return
        await asyncio.wait(tasks, timeout=timeout)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_armed(self, key: ConversationKey) -> bool:
        return key.member in self._armed

    def is_firing(self, key: ConversationKey) -> bool:
        return key.member in self._firing

    @property
    def armed_count(self) -> int:
        return len(self._armed)

    @property
    def firing_count(self) -> int:
        return len(self._firing)

    def status(self) -> dict:
        return {
            "window_seconds": self.window_seconds,
            "armed": self.armed_count,
            "firing": self.firing_count,
        }
