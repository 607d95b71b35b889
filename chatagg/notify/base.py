"""Real-time notifier interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Literal

from chatagg.bus.events import ConversationKey


NotifyKind = Literal["status", "message", "error", "connected"]


class Notifier(ABC):
    """
    Best-effort status push to a connected client.

    Contract:
        - Never raises for a missing client connection
        - Returns whether the update reached at least one subscriber
    """

    @abstractmethod
    async def notify(
        self,
        key: ConversationKey,
        text: str,
        kind: NotifyKind = "status",
    ) -> bool:
        ...
