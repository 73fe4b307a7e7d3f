"""Base async HTTP client with connection pooling.

All outbound HTTP collaborators (chart source, IPFS, alert webhook) inherit
from this base to get consistent behavior:
- Async/await for non-blocking I/O
- One pooled httpx.AsyncClient per context
- Uniform error type carrying status code and a body excerpt

Retry policy is NOT implemented here. The chart fetcher owns its bounded
backoff; every other caller treats a failed request as final.

Usage:
    class MyClient(BaseAsyncClient):
        def __init__(self, token: str):
            super().__init__(
                base_url="https://api.example.com",
                headers={"Authorization": f"Bearer {token}"},
            )

        async def get_thing(self, name: str) -> dict:
            response = await self._request("GET", f"/things/{name}")
            return response.json()
"""

import logging
from typing import Any

import httpx


logger = logging.getLogger(__name__)

USER_AGENT = "hitcastor-snapshotter/1.0.0"


class APIProviderError(Exception):
    """Base exception for outbound HTTP errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class BaseAsyncClient:
    """Base async HTTP client.

    Args:
        base_url: Base URL for relative request paths ("" for absolute URLs)
        headers: Default headers for all requests
        timeout: Request timeout in seconds (default: 30)
        transport: Optional httpx transport (tests)
    """

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"User-Agent": USER_AGENT, **(headers or {})}
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BaseAsyncClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make one HTTP request and map failures to APIProviderError.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Absolute URL, or path relative to base_url
            **kwargs: Passed through to httpx (params, json, content, files)

        Returns:
            The successful (2xx) response

        Raises:
            APIProviderError: On timeout, network error or non-2xx status
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async with context manager.")

        if self.base_url and not url.startswith(("http://", "https://", "/")):
            url = f"/{url}"

        logger.debug("%s %s%s", method, self.base_url, url)

        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise APIProviderError(f"Request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise APIProviderError(f"Network error: {e}") from e

        logger.debug("Response: %d for %s", response.status_code, url)

        if not response.is_success:
            error_body = response.text[:500]
            raise APIProviderError(
                message=f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                response_body=error_body,
            )
        return response

    async def get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """Convenience method for GET requests."""
        return await self._request("GET", url, params=params)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        """Convenience method for POST requests."""
        return await self._request("POST", url, **kwargs)
