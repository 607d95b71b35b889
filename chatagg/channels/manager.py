"""Inbound channel orchestration: detect, parse, resolve media, validate."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from chatagg.bus.events import Channel, Fragment, FragmentKind, InboundMessage
from chatagg.channels.base import BaseChannel
from chatagg.config.schema import Config
from chatagg.llm.base import MediaTextProvider


AUDIO_PLACEHOLDER = "[audio message could not be transcribed]"
IMAGE_PLACEHOLDER = "[image could not be read]"


@dataclass(slots=True)
class AcceptedMessage:
    """An inbound message that produced a fragment to buffer."""

    message: InboundMessage
    fragment: Fragment


class ChannelManager:
    """
    Inbound channel orchestrator.

    Responsibilities:
        - Channel registry (enabled channels only)
        - Platform detection for raw webhook payloads
        - Audio / image resolution to text
        - Boundary validation before anything reaches the buffer
    """

    def __init__(
        self,
        config: Config,
        transcriber: Optional[MediaTextProvider] = None,
        vision: Optional[MediaTextProvider] = None,
    ):
        self.config = config
        self.transcriber = transcriber
        self.vision = vision
        self.max_message_length = config.aggregation.max_message_length

        self.channels: Dict[Channel, BaseChannel] = {}

        self._init_channels()

    # ==========================================================
    # Channel initialization
    # ==========================================================

    def _init_channels(self) -> None:
        """Initialize all enabled channels from config."""
        from chatagg.channels.meta import FacebookChannel, InstagramChannel
        from chatagg.channels.web import WebChannel
        from chatagg.channels.whatsapp import WhatsAppChannel

        cfg = self.config.channels
        self._register(FacebookChannel(cfg.facebook))
        self._register(InstagramChannel(cfg.instagram))
        self._register(WhatsAppChannel(cfg.whatsapp))
        self._register(WebChannel(cfg.web))

        if not self.channels:
            logger.warning("No channels enabled")

    def _register(self, channel: BaseChannel) -> None:
        if not channel.is_enabled:
            logger.debug("Channel disabled: {}", channel.name.value)
            return
        self.channels[channel.name] = channel
        logger.debug("Channel enabled: {}", channel.name.value)

    # ==========================================================
    # Ingress
    # ==========================================================

    def detect(self, payload: dict[str, Any]) -> Optional[BaseChannel]:
        for channel in self.channels.values():
            if channel.matches(payload):
                return channel
        return None

    def extract(self, payload: dict[str, Any]) -> Optional[InboundMessage]:
        """Detect the platform and parse its message (echo and ACL filtered)."""
        channel = self.detect(payload)
        if channel is None:
            logger.warning("Unknown platform format | keys={}", sorted(payload)[:10])
            return None
        return channel.handle(payload)

    async def process(self, payload: dict[str, Any]) -> Optional[AcceptedMessage]:
        """
        Full ingress pipeline for one webhook payload.

        Flow:
            detect -> parse -> resolve media -> validate

        Returns:
            None when the payload is filtered out or carries no usable text.
        """
        msg = self.extract(payload)
        if msg is None:
            return None

        fragment = await self.to_fragment(msg)
        if fragment is None:
            return None

        return AcceptedMessage(message=msg, fragment=fragment)

    # ==========================================================
    # Media + validation
    # ==========================================================

    async def to_fragment(self, msg: InboundMessage) -> Optional[Fragment]:
        if msg.kind == "audio":
            text = await self._resolve(self.transcriber, msg.content)
            kind = FragmentKind.AUDIO_TRANSCRIPT
            text = text or AUDIO_PLACEHOLDER
        elif msg.kind == "image":
            text = await self._resolve(self.vision, msg.content)
            kind = FragmentKind.IMAGE_TEXT
            text = text or IMAGE_PLACEHOLDER
        else:
            text = msg.content
            kind = FragmentKind.TEXT

        text = self.validate_text(text, msg)
        if text is None:
            return None

        return Fragment(text=text, kind=kind, observed_at=msg.received_at)

    def validate_text(self, text: Optional[str], msg: InboundMessage) -> Optional[str]:
        """Reject empty text; truncate text longer than the configured limit."""
        if not text or not text.strip():
            logger.info("Empty message rejected | key={}", msg.key.member)
            return None

        if len(text) > self.max_message_length:
            logger.warning(
                "Message too long, truncating | key={} length={} max={}",
                msg.key.member,
                len(text),
                self.max_message_length,
            )
            text = text[: self.max_message_length]

        return text

    async def _resolve(self, provider: Optional[MediaTextProvider], source: str) -> str:
        if provider is None or not provider.is_configured:
            logger.warning("No media provider configured, using placeholder")
            return ""
        return await provider.extract(source)

    # ==========================================================
    # Query API
    # ==========================================================

    def get_channel(self, name: Channel) -> Optional[BaseChannel]:
        return self.channels.get(name)

    @property
    def enabled_channels(self) -> list[str]:
        return [name.value for name in self.channels]

    def get_status(self) -> Dict[str, Any]:
        return {
            name.value: {
                "enabled": True,
                "allow_from": len(channel.config.allow_from),
            }
            for name, channel in self.channels.items()
        }
