"""
Web chat widget channel.

Payload shape:

    {"channel": "web", "user_id": "...", "type": "text" | "audio" | "image",
     "text": "...", "payload": {"text": ..., "audio_url": ..., "image_url": ...}}

Multipart uploads put the stored file path in ``file_path``.
"""

from __future__ import annotations

from typing import Any, Optional

from chatagg.bus.events import Channel, InboundMessage
from chatagg.channels.base import BaseChannel


MESSAGE_TYPES = ("text", "audio", "image")


class InvalidWebPayload(ValueError):
    """The web widget sent a payload the gateway must reject."""


def validate_web_payload(payload: dict[str, Any]) -> None:
    """
    Reject web payloads without a usable user id, type and content.

    Raises:
        InvalidWebPayload
    """
    if not payload.get("user_id"):
        raise InvalidWebPayload("user_id is required")

    msg_type = payload.get("type")
    if msg_type not in MESSAGE_TYPES:
        raise InvalidWebPayload(f"type must be one of {', '.join(MESSAGE_TYPES)}")

    if not _content_for(payload, msg_type):
        raise InvalidWebPayload(f"{msg_type} message has no content")


def _content_for(payload: dict[str, Any], msg_type: str) -> str:
    nested = payload.get("payload")
    if not isinstance(nested, dict):
        nested = {}

    if msg_type == "text":
        text = payload.get("text")
        if not isinstance(text, str):
            text = nested.get("text")
        return text if isinstance(text, str) else ""

    return payload.get("file_path") or nested.get(f"{msg_type}_url") or ""


class WebChannel(BaseChannel):
    """Own website widget; it never produces echoes."""

    name = Channel.WEB

    def matches(self, payload: dict[str, Any]) -> bool:
        return payload.get("channel") == Channel.WEB.value and bool(payload.get("user_id"))

    def parse(self, payload: dict[str, Any]) -> Optional[InboundMessage]:
        msg_type = payload.get("type")
        if msg_type not in MESSAGE_TYPES:
            return None

        metadata = {}
        if payload.get("file_path"):
            metadata["file_path"] = payload["file_path"]
            metadata["mimetype"] = payload.get("mimetype")

        return InboundMessage(
            channel=self.name,
            user_id=str(payload["user_id"]),
            kind=msg_type,
            content=_content_for(payload, msg_type),
            metadata=metadata,
        )
