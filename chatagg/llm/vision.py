"""
OpenAI vision provider: extract the text shown in an image.
"""

from __future__ import annotations

import base64
from typing import Any, Final

import httpx
from loguru import logger

from chatagg.llm.base import MediaTextProvider
from chatagg.utils.helpers import truncate


EXTRACT_TEXT_PROMPT: Final[str] = (
    "You are an assistant specialised in extracting text from images. "
    "Return all the text in the attached image exactly, keeping its order "
    "and line breaks as they appear."
)


class VisionTextProvider(MediaTextProvider):
    """Image-to-text through the chat completions API."""

    DEFAULT_MODEL: Final[str] = "gpt-4o-mini"
    MAX_TOKENS: Final[int] = 500

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(api_key, api_base, timeout, transport)
        self.model = model or self.DEFAULT_MODEL

    async def extract(self, source: str) -> str:
        """
        Returns:
            Extracted text, or empty string on failure.
        """
        if not self.api_key or not source:
            return ""

        try:
            return await self._request_analysis(source)
        except httpx.HTTPStatusError as e:
            logger.error(
                "Image analysis rejected | status={} body={}",
                e.response.status_code,
                truncate(e.response.text, 200),
            )
        except (httpx.HTTPError, OSError, ValueError, KeyError, IndexError) as e:
            logger.error("Image analysis failed | source={} err={}", truncate(source, 80), e)
        return ""

    async def _request_analysis(self, source: str) -> str:
        async with self._client() as client:
            image_url = await self._image_url(client, source)

            response = await client.post(
                f"{self.api_base}/chat/completions",
                headers=self._auth_headers,
                json=self._build_request(image_url),
            )

        response.raise_for_status()
        text = (response.json()["choices"][0]["message"].get("content") or "").strip()

        logger.info("Image analysed | chars={}", len(text))
        return text

    async def _image_url(self, client: httpx.AsyncClient, source: str) -> str:
        # remote images are passed by reference, local uploads inline
        if source.startswith(("http://", "https://")):
            return source

        _, content, content_type = await self._load_source(client, source)
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{content_type};base64,{encoded}"

    def _build_request(self, image_url: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.MAX_TOKENS,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": EXTRACT_TEXT_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                    ],
                }
            ],
        }
