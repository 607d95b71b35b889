"""
Facebook Messenger and Instagram channels.

Both platforms deliver the Messenger Platform webhook shape:

    {"object": "page" | "instagram",
     "entry": [{"messaging": [{"sender": {"id": ...},
                               "message": {"text": ..., "is_echo": ...,
                                           "attachments": [...]}}]}]}
"""

from __future__ import annotations

from typing import Any, Optional

from chatagg.bus.events import Channel, InboundMessage, MessageType
from chatagg.channels.base import BaseChannel


MEDIA_ATTACHMENTS: dict[str, MessageType] = {
    "audio": "audio",
    "image": "image",
}


class MessengerChannel(BaseChannel):
    """Shared parser for Messenger-shaped payloads."""

    object_type: str = ""

    def matches(self, payload: dict[str, Any]) -> bool:
        return payload.get("object") == self.object_type and bool(payload.get("entry"))

    def parse(self, payload: dict[str, Any]) -> Optional[InboundMessage]:
        entry = payload["entry"][0]
        messaging = (entry.get("messaging") or [None])[0]

        if not messaging or not messaging.get("message"):
            return None

        sender_id = (messaging.get("sender") or {}).get("id")
        if not sender_id:
            return None

        message = messaging["message"]
        kind, content = self._extract_content(message)

        return InboundMessage(
            channel=self.name,
            user_id=str(sender_id),
            kind=kind,
            content=content,
            is_echo=bool(message.get("is_echo", False)),
            metadata={
                "message_id": message.get("mid"),
                "timestamp": messaging.get("timestamp"),
            },
        )

    @staticmethod
    def _extract_content(message: dict[str, Any]) -> tuple[MessageType, str]:
        attachments = message.get("attachments") or []
        if attachments:
            attachment = attachments[0]
            kind = MEDIA_ATTACHMENTS.get(attachment.get("type", ""))
            if kind is not None:
                return kind, (attachment.get("payload") or {}).get("url", "")

        return "text", message.get("text") or ""


class FacebookChannel(MessengerChannel):
    name = Channel.FACEBOOK
    object_type = "page"


class InstagramChannel(MessengerChannel):
    name = Channel.INSTAGRAM
    object_type = "instagram"
