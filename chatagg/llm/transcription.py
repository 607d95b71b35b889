"""
OpenAI Whisper voice transcription provider.
"""

from __future__ import annotations

from typing import Final

import httpx
from loguru import logger

from chatagg.llm.base import MediaTextProvider
from chatagg.utils.helpers import truncate


class WhisperTranscriptionProvider(MediaTextProvider):
    """
    Voice transcription backed by the OpenAI audio transcription API.

    Remote audio is downloaded first, then uploaded as multipart form data.
    """

    DEFAULT_MODEL: Final[str] = "whisper-1"
    DEFAULT_TIMEOUT: Final[float] = 60.0

    # ---------------------------------------------------------------------

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        model: str | None = None,
        prompt: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(api_key, api_base, timeout, transport)
        self.model = model or self.DEFAULT_MODEL
        self.prompt = prompt or ""

        if not self.api_key:
            logger.warning("OpenAI API key not configured, audio will not be transcribed")

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    async def extract(self, source: str) -> str:
        return await self.transcribe(source)

    async def transcribe(self, source: str) -> str:
        """
        Transcribe an audio file into text.

        Args:
            source: Audio URL or local file path.

        Returns:
            Transcribed text, or empty string on failure.
        """
        if not self.api_key or not source:
            return ""

        try:
            return await self._request_transcription(source)
        except httpx.HTTPStatusError as e:
            logger.error(
                "Whisper transcription rejected | status={} body={}",
                e.response.status_code,
                truncate(e.response.text, 200),
            )
        except (httpx.HTTPError, OSError, ValueError, KeyError) as e:
            logger.error("Whisper transcription failed | source={} err={}", truncate(source, 80), e)
        return ""

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    async def _request_transcription(self, source: str) -> str:
        async with self._client() as client:
            name, content, content_type = await self._load_source(client, source)

            data = {"model": self.model}
            if self.prompt:
                data["prompt"] = self.prompt

            response = await client.post(
                f"{self.api_base}/audio/transcriptions",
                headers=self._auth_headers,
                data=data,
                files={"file": (name, content, content_type)},
            )

        response.raise_for_status()
        text = (response.json().get("text") or "").strip()

        if not text:
            logger.warning("Whisper transcription returned empty result")
        else:
            logger.info("Audio transcribed | chars={}", len(text))

        return text
