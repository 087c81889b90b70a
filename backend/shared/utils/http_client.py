"""
Async HTTP client wrapper for outbound source requests (calendar feeds, results pages).
Single attempt per call: a failed fetch is retried by the next scheduled run, never inline.
"""
from __future__ import annotations

import time
from typing import Optional

import httpx

from shared.config import get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import SOURCE_LATENCY, SOURCE_REQUESTS

logger = get_logger(__name__)


class SourceHTTPClient:
    """
    Async HTTP client for scraped/third-party text sources.
    Handles timeouts, default headers, and records metrics per request.
    """

    def __init__(
        self,
        source_name: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._source = source_name
        self._timeout = timeout_s or settings.fetch_timeout_s
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SourceHTTPClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get_text(self, url: str, extra_headers: dict[str, str] | None = None) -> str:
        """
        Perform a GET request and return the decoded body.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
            httpx.HTTPError: On timeouts and transport failures.
        """
        if not self._client:
            raise RuntimeError("SourceHTTPClient not started. Call start() first.")

        start_time = time.perf_counter()
        status = "error"
        try:
            resp = await self._client.get(url, headers=extra_headers)
            status = str(resp.status_code)
            resp.raise_for_status()
            logger.debug(
                "source_request_success",
                source=self._source,
                url=url,
                status=resp.status_code,
                latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            return resp.text
        except httpx.TimeoutException:
            status = "timeout"
            raise
        finally:
            SOURCE_REQUESTS.labels(source=self._source, status=status).inc()
            SOURCE_LATENCY.labels(source=self._source).observe(time.perf_counter() - start_time)
