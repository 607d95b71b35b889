"""Base channel abstraction for inbound platform payloads."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from loguru import logger

from chatagg.bus.events import Channel, InboundMessage
from chatagg.config.schema import ChannelBaseConfig


class BaseChannel(ABC):
    """
    Base abstraction for all chat platform channels.

    A channel recognises its platform's webhook payload and extracts one
    InboundMessage from it. It never talks to the platform itself.

    Design goals:
        - Platform-agnostic permission filtering
        - Echo filtering (our own outbound messages come back as webhooks)
        - Malformed payloads are dropped, never raised
    """

    #: Channel unique identifier
    name: Channel

    def __init__(self, config: Optional[ChannelBaseConfig] = None):
        self.config = config or ChannelBaseConfig()

    # =============================
    # Platform contract
    # =============================

    @abstractmethod
    def matches(self, payload: dict[str, Any]) -> bool:
        """Return True if the payload comes from this platform."""
        ...

    @abstractmethod
    def parse(self, payload: dict[str, Any]) -> Optional[InboundMessage]:
        """
        Extract the message from a matching payload.

        Returns None when the payload carries no user message
        (delivery receipts, reads, reactions).
        """
        ...

    # =============================
    # Inbound handling
    # =============================

    def handle(self, payload: dict[str, Any]) -> Optional[InboundMessage]:
        """
        Unified ingress for one payload.

        Flow:
            parse -> echo filter -> permission filter
        """
        try:
            msg = self.parse(payload)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            logger.warning("Malformed {} payload dropped | err={}", self.name.value, e)
            return None

        if msg is None:
            logger.debug("No user message in {} payload", self.name.value)
            return None

        if msg.is_echo:
            logger.debug("Echo filtered | channel={} user={}", self.name.value, msg.user_id)
            return None

        if not self._is_allowed(msg.user_id):
            self._log_permission_denied(msg.user_id)
            return None

        return msg

    # =============================
    # Permission model
    # =============================

    def _is_allowed(self, sender_id: str) -> bool:
        allow_list = self.config.allow_from

        # Empty allow list means allow all
        if not allow_list:
            return True

        sender = str(sender_id)

        if sender in allow_list:
            return True

        # Support composite IDs: "xxx|yyy|zzz"
        if "|" in sender:
            return any(part in allow_list for part in sender.split("|") if part)

        return False

    def _log_permission_denied(self, sender_id: str) -> None:
        logger.warning(
            "Access denied | channel={} sender={} | "
            "Add sender to allow_from to grant permission",
            self.name.value,
            sender_id,
        )

    # =============================
    # Runtime state
    # =============================

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled
