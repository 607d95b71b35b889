"""
Event types flowing through the aggregation gateway.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from chatagg.utils.helpers import build_member, parse_member, utc_now


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------

class Channel(str, Enum):
    """Inbound platform identifier."""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    WHATSAPP = "whatsapp"
    WEB = "web"


class FragmentKind(str, Enum):
    """Provenance of a fragment's text."""

    TEXT = "text"
    AUDIO_TRANSCRIPT = "audio_transcript"
    IMAGE_TEXT = "image_text"


MessageType = Literal["text", "audio", "image"]


# ---------------------------------------------------------------------
# Conversation key
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ConversationKey:
    """
    One aggregation stream: (channel, user id).

    Both the Redis keys and the local timer key are derived here so they
    always point at the same conversation.
    """

    channel: Channel
    user_id: str

    @property
    def member(self) -> str:
        """Timer-tracking key, also the deadline-set member."""
        return build_member(self.channel.value, self.user_id)

    def buffer_key(self, prefix: str = "") -> str:
        return f"{prefix}chat:{self.member}"

    def marker_key(self, prefix: str = "") -> str:
        return f"{prefix}start:{self.member}"

    @classmethod
    def parse(cls, member: str) -> "ConversationKey":
        channel, user_id = parse_member(member)
        return cls(channel=Channel(channel), user_id=user_id)

    def __str__(self) -> str:
        return self.member


# ---------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------

@dataclass(slots=True)
class InboundMessage:
    """
    Message extracted from a platform payload, before media resolution.

    ``content`` is the text for text messages and the media URL (or local
    file path for uploads) for audio / image messages.
    """

    channel: Channel
    user_id: str
    kind: MessageType
    content: str
    is_echo: bool = False

    received_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.channel, self.user_id)


# ---------------------------------------------------------------------
# Fragment
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Fragment:
    """
    One unit of buffered content, immutable once stored.
    """

    text: str
    kind: FragmentKind = FragmentKind.TEXT
    observed_at: datetime = field(default_factory=utc_now)
    fragment_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.fragment_id,
                "text": self.text,
                "kind": self.kind.value,
                "observed_at": self.observed_at.isoformat(),
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "Fragment":
        data = json.loads(raw)
        return cls(
            text=data["text"],
            kind=FragmentKind(data.get("kind", FragmentKind.TEXT.value)),
            observed_at=datetime.fromisoformat(data["observed_at"]),
            fragment_id=data.get("id") or uuid.uuid4().hex,
        )


# ---------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------

@dataclass(slots=True)
class CombinedMessage:
    """
    Result of one flushed aggregation window.
    """

    key: ConversationKey
    text: str
    fragment_count: int
    window_id: str | None = None
    truncated: bool = False

    def to_payload(self) -> dict[str, str]:
        """Wire document for the downstream automation endpoint."""
        return {
            "user_id": self.key.user_id,
            "channel": self.key.channel.value,
            "text": self.text,
        }


DeliveryStatus = Literal["delivered", "failed"]


@dataclass(slots=True)
class DeliveryOutcome:
    """
    Final state of one delivery job.
    """

    status: DeliveryStatus
    attempts: int
    error: str | None = None
    response: Any | None = None

    @property
    def ok(self) -> bool:
        return self.status == "delivered"
