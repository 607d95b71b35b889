"""
Server-Sent Events notifier.

Each connected client owns a bounded queue. ``notify`` pushes a JSON event
into every queue registered for the conversation; ``stream`` turns one queue
into ``text/event-stream`` frames with periodic keep-alive comments.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import AsyncIterator, DefaultDict, Final

from loguru import logger

from chatagg.bus.events import ConversationKey
from chatagg.notify.base import Notifier, NotifyKind
from chatagg.utils.helpers import now_ms, truncate


DEFAULT_KEEPALIVE_S: Final[float] = 30.0
QUEUE_SIZE: Final[int] = 100


def format_event(kind: str, message: str) -> str:
    """Render one SSE data frame."""
    data = json.dumps(
        {"type": kind, "message": message, "timestamp": now_ms()},
        ensure_ascii=False,
    )
    return f"data: {data}\n\n"


class SSEManager(Notifier):
    """
    Registry of live SSE subscribers keyed by conversation member.
    """

    def __init__(self, keepalive_seconds: float = DEFAULT_KEEPALIVE_S):
        self.keepalive_seconds = keepalive_seconds
        self._subscribers: DefaultDict[str, list[asyncio.Queue[str]]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, key: ConversationKey) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._subscribers[key.member].append(queue)
        logger.info("SSE connection registered | key={}", key.member)
        return queue

    def unregister(self, key: ConversationKey, queue: asyncio.Queue[str]) -> None:
        queues = self._subscribers.get(key.member)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[key.member]
        logger.info("SSE connection closed | key={}", key.member)

    def has_active_connection(self, key: ConversationKey) -> bool:
        return bool(self._subscribers.get(key.member))

    # ------------------------------------------------------------------
    # Notifier
    # ------------------------------------------------------------------

    async def notify(
        self,
        key: ConversationKey,
        text: str,
        kind: NotifyKind = "status",
    ) -> bool:
        queues = self._subscribers.get(key.member)
        if not queues:
            logger.debug("No active SSE connection | key={}", key.member)
            return False

        frame = format_event(kind, text)
        delivered = False

        for queue in list(queues):
            try:
                queue.put_nowait(frame)
                delivered = True
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event | key={}", key.member)

        if delivered:
            logger.debug("SSE {} sent | key={} text={}", kind, key.member, truncate(text, 50))
        return delivered

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        key: ConversationKey,
        greeting: str | None = "Connected, waiting for response...",
    ) -> AsyncIterator[str]:
        """
        Yield SSE frames for one client until the consumer stops iterating.
        """
        queue = self.register(key)
        try:
            yield format_event("connected", "Connection established")
            if greeting:
                yield format_event("status", greeting)

            while True:
                try:
                    frame = await asyncio.wait_for(queue.get(), self.keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield frame
        finally:
            self.unregister(key, queue)

    def stats(self) -> dict:
        return {
            "active_connections": sum(len(q) for q in self._subscribers.values()),
            "connections": list(self._subscribers.keys()),
        }
