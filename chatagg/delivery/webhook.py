"""
HTTP webhook delivery to the downstream automation endpoint.
"""

from __future__ import annotations

from typing import Final

import httpx
from loguru import logger

from chatagg.bus.events import CombinedMessage
from chatagg.delivery.base import (
    DeliveryAck,
    DeliveryClient,
    RetriableDeliveryError,
    TerminalDeliveryError,
)
from chatagg.utils.helpers import truncate


# 4xx codes that still deserve a retry
_RETRIABLE_CLIENT_CODES: Final[frozenset[int]] = frozenset({408, 425, 429})


class WebhookDeliveryClient(DeliveryClient):
    """
    POSTs ``{user_id, channel, text}`` as JSON to a configured URL.

    Failure classification:
        - missing URL, 4xx          -> TerminalDeliveryError
        - timeout, transport, 5xx   -> RetriableDeliveryError
        - 408 / 425 / 429           -> RetriableDeliveryError
    """

    DEFAULT_TIMEOUT: Final[float] = 30.0

    def __init__(
        self,
        webhook_url: str | None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url or ""
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

        if not self.webhook_url:
            logger.warning("Delivery webhook URL not configured")

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    async def deliver(self, message: CombinedMessage) -> DeliveryAck:
        if not self.webhook_url:
            raise TerminalDeliveryError("Delivery webhook URL not configured")

        payload = message.to_payload()
        logger.info(
            "Delivering | key={} fragments={} chars={}",
            message.key.member,
            message.fragment_count,
            len(message.text),
        )

        try:
            response = await self._client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException as e:
            raise RetriableDeliveryError(f"Delivery webhook timeout: {e}") from e
        except httpx.TransportError as e:
            raise RetriableDeliveryError(f"Delivery webhook error: {e}") from e

        self._raise_for_status(response)

        body = self._parse_body(response)
        logger.debug(
            "Delivery response | status={} body={}",
            response.status_code,
            truncate(str(body), 200),
        )
        return DeliveryAck(status_code=response.status_code, body=body)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        code = response.status_code
        if code < 400:
            return

        detail = f"Delivery webhook failed: {code} - {response.reason_phrase}"

        if code >= 500 or code in _RETRIABLE_CLIENT_CODES:
            raise RetriableDeliveryError(detail, status_code=code)

        raise TerminalDeliveryError(detail, status_code=code)

    @staticmethod
    def _parse_body(response: httpx.Response):
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
