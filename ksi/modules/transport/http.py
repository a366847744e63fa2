"""
HTTP transports for the aggregator, extender and publications file.

Each transport owns a persistent ``httpx.AsyncClient`` (lazily created, or
injected by the caller), retries transport errors and 5xx responses with
exponential backoff, and maps everything else to the client's error types.
"""

from __future__ import annotations

import asyncio

import httpx

from ksi.core.config import Settings
from ksi.core.errors import (
    AuthenticationFailedError,
    ClientClosedError,
    NetworkError,
    TransportTimeoutError,
)
from ksi.core.logging import get_logger

logger = get_logger(__name__)

_REQUEST_CONTENT_TYPE = "application/ksi-request"
_USER_AGENT = "ksi-client-python/0.1"


class _HttpTransport:
    """Shared request loop for the HTTP transports."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
    ) -> None:
        if not url:
            raise ValueError(f"{type(self).__name__} requires a URL")
        self.url = url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self._http_client = client
        self._owns_client = client is None
        self._closed = False

    def _get_client(self) -> httpx.AsyncClient:
        """Return (or lazily create) the HTTP client."""
        if self._closed:
            raise ClientClosedError(f"{type(self).__name__} is closed")
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": _USER_AGENT},
            )
        return self._http_client

    async def _request(self, method: str, content: bytes | None = None) -> bytes:
        client = self._get_client()
        headers = {"Content-Type": _REQUEST_CONTENT_TYPE} if content is not None else {}
        last_error: NetworkError | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.request(
                    method,
                    self.url,
                    content=content,
                    headers=headers,
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as exc:
                last_error = TransportTimeoutError(f"Request to {self.url} timed out: {exc}")
            except httpx.TransportError as exc:
                last_error = NetworkError(f"Request to {self.url} failed: {exc}")
            else:
                status = response.status_code
                if status in (401, 403):
                    raise AuthenticationFailedError(
                        f"{self.url} rejected the credentials (HTTP {status})"
                    )
                if 200 <= status < 300:
                    return response.content
                last_error = NetworkError(f"{self.url} answered HTTP {status}")
                if status < 500:
                    raise last_error

            if attempt < self.max_retries:
                backoff = self.retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    "ksi_transport_retry",
                    url=self.url,
                    attempt=attempt,
                    backoff=backoff,
                    error=str(last_error),
                )
                await asyncio.sleep(backoff)

        logger.warning(
            "ksi_transport_exhausted",
            url=self.url,
            max_retries=self.max_retries,
        )
        assert last_error is not None
        raise last_error

    async def close(self) -> None:
        """Close the underlying HTTP client if this transport created it."""
        if self._closed:
            return
        self._closed = True
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


class HttpSigningTransport(_HttpTransport):
    """POSTs aggregation request PDUs to the aggregator."""

    async def send_signing_request(self, request: bytes) -> bytes:
        return await self._request("POST", request)


class HttpExtendingTransport(_HttpTransport):
    """POSTs extension request PDUs to the extender."""

    async def send_extending_request(self, request: bytes) -> bytes:
        return await self._request("POST", request)


class HttpPublicationsFileTransport(_HttpTransport):
    """Downloads the publications file anonymously."""

    async def fetch_publications_file(self) -> bytes:
        return await self._request("GET")


def transport_options(settings: Settings) -> dict[str, float | int]:
    """Keyword arguments shared by every HTTP transport built from settings."""
    return {
        "timeout": settings.request_timeout,
        "max_retries": settings.max_retries,
        "retry_backoff": settings.retry_backoff,
    }
