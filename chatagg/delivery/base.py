"""
Delivery collaborator interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from chatagg.bus.events import CombinedMessage


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DeliveryError(Exception):
    """Base class for downstream delivery failures."""

    retriable: bool = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RetriableDeliveryError(DeliveryError):
    """Timeout, transport failure, 5xx: worth another attempt."""

    retriable = True


class TerminalDeliveryError(DeliveryError):
    """4xx or missing configuration: retrying cannot help."""

    retriable = False


# ---------------------------------------------------------------------------
# Ack
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class DeliveryAck:
    status_code: int
    body: Any | None = None

    @property
    def reply_text(self) -> str | None:
        """Best-effort text to forward to a connected client."""
        if isinstance(self.body, str):
            return self.body.strip() or None
        if isinstance(self.body, dict):
            for field_name in ("reply", "response", "message", "text"):
                value = self.body.get(field_name)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None


# ---------------------------------------------------------------------------
# Client interface
# ---------------------------------------------------------------------------

class DeliveryClient(ABC):
    """
    Hands a combined message to the downstream automation endpoint.

    Implementations raise ``RetriableDeliveryError`` or
    ``TerminalDeliveryError``; the dispatcher owns the retry policy.
    """

    @abstractmethod
    async def deliver(self, message: CombinedMessage) -> DeliveryAck:
        raise NotImplementedError

    @property
    def is_configured(self) -> bool:
        return True

    async def aclose(self) -> None:
        """Release network resources."""
        return None
