"""
Flush pipeline: drain a finished window, combine it, hand it to delivery.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Iterable, Optional

from loguru import logger

from chatagg.bus.events import CombinedMessage, ConversationKey, Fragment, FragmentKind
from chatagg.bus.queue import DeliveryDispatcher, DeliveryJob
from chatagg.buffer.store import BufferStore
from chatagg.notify.base import Notifier
from chatagg.utils.helpers import truncate


DEFAULT_SEPARATOR: Final[str] = " "
DEFAULT_MAX_LENGTH: Final[int] = 10_000
PROCESSING_NOTICE: Final[str] = "Processing your message..."

KIND_TAGS: Final[dict[FragmentKind, str]] = {
    FragmentKind.TEXT: "",
    FragmentKind.AUDIO_TRANSCRIPT: "[audio] ",
    FragmentKind.IMAGE_TEXT: "[image] ",
}


@dataclass(slots=True)
class CombinedText:
    text: str
    count: int
    truncated: bool = False


def combine(
    fragments: Iterable[Fragment],
    separator: str = DEFAULT_SEPARATOR,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> CombinedText:
    """
    Join fragments in arrival-timestamp order.

    The sort is stable, so fragments sharing a timestamp keep storage order.
    Non-text fragments are tagged with their provenance.
    """
    ordered = sorted(fragments, key=lambda f: f.observed_at)

    parts = [
        f"{KIND_TAGS[f.kind]}{f.text.strip()}"
        for f in ordered
        if f.text and f.text.strip()
    ]
    text = separator.join(parts)

    truncated = len(text) > max_length
    if truncated:
        logger.warning("Combined text too long ({} chars), truncating to {}", len(text), max_length)
        text = text[:max_length]

    return CombinedText(text=text, count=len(parts), truncated=truncated)


class FlushPipeline:
    """
    Turns a finished aggregation window into one queued CombinedMessage.

    Flow:
        drain -> notify "processing" -> combine -> dispatcher.submit

    Delivery runs on the dispatcher; ``flush`` never waits for it.
    """

    def __init__(
        self,
        store: BufferStore,
        dispatcher: DeliveryDispatcher,
        notifier: Optional[Notifier] = None,
        separator: str = DEFAULT_SEPARATOR,
        max_length: int = DEFAULT_MAX_LENGTH,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.separator = separator
        self.max_length = max_length

    async def flush(self, key: ConversationKey, window_id: str | None = None) -> DeliveryJob | None:
        """
        Drain and dispatch one window.

        Returns:
            The delivery job, or None when there was nothing to flush.
        """
        fragments = await self.store.drain(key, window_id)

        if not fragments:
            logger.info("No fragments to flush | key={} window={}", key.member, window_id)
            return None

        await self._notify(key, PROCESSING_NOTICE, "status")

        combined = combine(fragments, self.separator, self.max_length)
        if not combined.text:
            logger.warning("Window held only empty fragments | key={}", key.member)
            return None

        message = CombinedMessage(
            key=key,
            text=combined.text,
            fragment_count=combined.count,
            window_id=window_id,
            truncated=combined.truncated,
        )

        logger.info(
            "Window flushed | key={} fragments={} text={}",
            key.member,
            message.fragment_count,
            truncate(message.text, 80),
        )

        if not self.dispatcher.is_running:
            await self.dispatcher.start()
        return self.dispatcher.submit(message)

    async def _notify(self, key: ConversationKey, text: str, kind) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(key, text, kind)
        except Exception:
            logger.exception("Notifier failed | key={}", key.member)
