"""
Base media-to-text provider interface.
"""

from __future__ import annotations

import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Final

import httpx
from loguru import logger


DEFAULT_API_BASE: Final[str] = "https://api.openai.com/v1"


class MediaTextProvider(ABC):
    """
    Abstract base class for providers that turn media into text.

    Provider responsibilities:
    - Accept a media URL or a local file path
    - Return the extracted text, or an empty string on failure
    """

    DEFAULT_TIMEOUT: float = 60.0

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or ""
        self.api_base = (api_base or DEFAULT_API_BASE).rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._transport = transport

    # ---------------------------------------------------------------------

    @abstractmethod
    async def extract(self, source: str) -> str:
        """Return the text carried by the media at ``source``."""
        raise NotImplementedError

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    # ---------------------------------------------------------------------
    # Shared helpers
    # ---------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _load_source(self, client: httpx.AsyncClient, source: str) -> tuple[str, bytes, str]:
        """
        Read media bytes from a URL or local path.

        Returns:
            (filename, content, content_type)
        """
        if source.startswith(("http://", "https://")):
            logger.debug("Downloading media | url={}", source)
            response = await client.get(source, follow_redirects=True)
            response.raise_for_status()

            name = Path(httpx.URL(source).path).name or "media"
            content_type = response.headers.get("content-type", "").split(";")[0]
            return name, response.content, content_type or _guess_type(name)

        path = Path(source)
        return path.name, path.read_bytes(), _guess_type(path.name)


def _guess_type(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"
