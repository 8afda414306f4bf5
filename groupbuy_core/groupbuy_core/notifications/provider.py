"""Outbound messaging provider contract and the LINE push client.

The dispatcher only depends on :class:`MessagingProvider`.  The LINE
client sends every push with ``X-Line-Retry-Key`` set to the notification
id, so a retry of an already-accepted push is answered with 409 and no
duplicate message; that answer counts as success here.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from groupbuy_core.errors import DeliveryError

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.line.me"
_DEFAULT_TIMEOUT_SECONDS = 10.0
_RETRYABLE_STATUS = frozenset({408, 429})
_MAX_TEXT_LENGTH = 5000


class MessagingProvider(Protocol):
    async def push(self, *, access_token: str, to: str, text: str, retry_key: str) -> None:
        """Deliver *text* to *to*; raise :class:`DeliveryError` on failure."""
        ...


class LineMessagingClient:
    """LINE Messaging API push client.

    Parameters
    ----------
    base_url:
        API root, overridable for tests and regional endpoints.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    """

    def __init__(
        self,
        base_url: str = _DEFAULT_BASE_URL,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def push(self, *, access_token: str, to: str, text: str, retry_key: str) -> None:
        """Send one text message via ``POST /v2/bot/message/push``.

        Raises
        ------
        DeliveryError
            ``retryable=True`` for timeouts, transport errors, 408, 429 and
            5xx; ``retryable=False`` for every other 4xx.
        """
        url = f"{self._base_url}/v2/bot/message/push"
        body = {"to": to, "messages": [{"type": "text", "text": text[:_MAX_TEXT_LENGTH]}]}
        headers = {
            "Authorization": f"Bearer {access_token}",
            "X-Line-Retry-Key": retry_key,
        }
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"LINE push timed out: {exc}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise DeliveryError(f"LINE push transport error: {exc}", retryable=True) from exc

        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 409:
            logger.info("LINE push already accepted for retry key %s", retry_key)
            return

        detail = response.text[:500]
        retryable = status >= 500 or status in _RETRYABLE_STATUS
        raise DeliveryError(f"LINE push failed with HTTP {status}: {detail}", retryable=retryable, status_code=status)
