"""
Outbound HTTP for integration providers.

Every call carries a bounded httpx.Timeout. A fresh AsyncClient is opened
per call; tests inject an httpx.MockTransport through `transport`.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class IntegrationHttpClient:
    """Thin wrapper over httpx.AsyncClient with the configured timeout."""

    def __init__(
        self,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def post_form(
        self,
        url: str,
        data: Dict[str, str],
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """POST an application/x-www-form-urlencoded body."""
        return await self.request(
            "POST",
            url,
            data=data,
            headers={"Accept": "application/json", **(headers or {})},
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request.

        Raises httpx.TimeoutException / httpx.HTTPError on transport
        failures; callers convert them to domain errors.
        """
        async with self._client() as client:
            response = await client.request(method, url, **kwargs)

        logger.debug(
            "Provider HTTP call completed",
            extra={
                "method": method,
                "url": str(response.request.url.copy_with(query=None)),
                "status_code": response.status_code,
            }
        )
        return response
