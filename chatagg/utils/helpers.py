"""
Runtime utility helpers.

Design principles:
- Centralized path management
- Pure functional utilities
- Predictable clock access
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


# ===========================
# Path System
# ===========================

@dataclass(frozen=True, slots=True)
class RuntimePaths:
    """
    Centralized runtime path manager.

    Nothing is created on import; call ``ensure()`` before writing.
    """

    root: Path

    @classmethod
    def default(cls) -> "RuntimePaths":
        return cls(root=Path.home() / ".chatagg")

    def ensure(self) -> "RuntimePaths":
        self.root.mkdir(parents=True, exist_ok=True)
        self.uploads.mkdir(parents=True, exist_ok=True)
        return self

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    @property
    def uploads(self) -> Path:
        return self.root / "uploads"


# ===========================
# Clock Utilities
# ===========================

def utc_now() -> datetime:
    """Return the current timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format."""
    return utc_now().isoformat()


def now_ms() -> int:
    """Return current unix time in milliseconds."""
    return int(time.time() * 1000)


# ===========================
# String Utilities
# ===========================

def truncate(s: str, max_len: int = 120, suffix: str = "...") -> str:
    """Truncate a string with suffix."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def parse_member(member: str) -> tuple[str, str]:
    """
    Parse a conversation member: channel:user_id

    Raises:
        ValueError: invalid member format
    """
    if ":" not in member:
        raise ValueError(f"Invalid conversation member format: {member}")

    channel, user_id = member.split(":", 1)
    return channel, user_id


def build_member(channel: str, user_id: str) -> str:
    """Build normalized conversation member."""
    return f"{channel}:{user_id}"
