"""
WhatsApp channel for the Cloud API webhook.

Payload shape:

    {"object": "whatsapp_business_account",
     "entry": [{"changes": [{"value": {"contacts": [{"wa_id": ...}],
                                       "messages": [{"from": ..., "type": ...}]}}]}]}

Messages sent from our own business number come back as webhooks and are
flagged as echoes.
"""

from __future__ import annotations

from typing import Any, Optional

from chatagg.bus.events import Channel, InboundMessage, MessageType
from chatagg.channels.base import BaseChannel
from chatagg.config.schema import WhatsAppConfig


class WhatsAppChannel(BaseChannel):
    """
    WhatsApp Business Cloud API channel.

    Responsibilities:
        - Translate inbound Cloud API notifications into InboundMessage
        - Flag messages from the configured business number as echoes
    """

    name = Channel.WHATSAPP

    def __init__(self, config: Optional[WhatsAppConfig] = None):
        super().__init__(config or WhatsAppConfig())
        self.config: WhatsAppConfig

    def matches(self, payload: dict[str, Any]) -> bool:
        return payload.get("object") == "whatsapp_business_account" and bool(payload.get("entry"))

    # =============================
    # Message normalization
    # =============================

    def parse(self, payload: dict[str, Any]) -> Optional[InboundMessage]:
        entry = payload["entry"][0]
        change = (entry.get("changes") or [None])[0]
        value = (change or {}).get("value") or {}

        messages = value.get("messages") or []
        if not messages:
            # status updates (sent / delivered / read) carry no messages
            return None

        message = messages[0]
        contact = (value.get("contacts") or [{}])[0]
        user_id = contact.get("wa_id") or message.get("from")

        if not user_id:
            return None

        kind, content = self._extract_content(message)
        if kind is None:
            return None

        own_number = self.config.phone_number_id
        is_echo = bool(own_number) and message.get("from") == own_number

        return InboundMessage(
            channel=self.name,
            user_id=str(user_id),
            kind=kind,
            content=content,
            is_echo=is_echo,
            metadata={
                "message_id": message.get("id"),
                "timestamp": message.get("timestamp"),
                "profile_name": (contact.get("profile") or {}).get("name"),
            },
        )

    @staticmethod
    def _extract_content(message: dict[str, Any]) -> tuple[Optional[MessageType], str]:
        msg_type = message.get("type")

        if msg_type == "text":
            return "text", (message.get("text") or {}).get("body", "")

        if msg_type in ("audio", "image"):
            media = message.get(msg_type) or {}
            return msg_type, media.get("url") or media.get("link") or ""

        return None, ""
