"""Base HTTP client for remote storage APIs.

Provides a base class for API clients with:
- Connection pooling
- Retry with exponential backoff for idempotent requests (GET, DELETE)
- Request/response logging
- Timeout configuration
- JSON decoding with empty-body handling
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from storage_gateway.utils.retry import is_transient_http_error, retry

logger = logging.getLogger(__name__)

_idempotent_retry = retry(
    max_attempts=3,
    initial_delay=0.5,
    max_delay=5.0,
    exceptions=(httpx.HTTPError,),
    retry_if=is_transient_http_error,
)


class InvalidResponseError(httpx.DecodingError):
    """A successful response whose body is not the JSON the API promised."""

    def __init__(self, message: str, *, response: httpx.Response) -> None:
        super().__init__(message, request=response.request)
        self.response = response


class BaseHTTPClient:
    """Base HTTP client for remote APIs.

    POST and PATCH are never retried because they are not idempotent on the
    remote side; GET and DELETE retry transient failures and then raise the
    original httpx error.

    Example:
        ```python
        class StatusClient(BaseHTTPClient):
            def __init__(self):
                super().__init__(base_url="https://status.example.com", timeout=10.0)

            async def get_status(self) -> dict | None:
                return await self.get("/status")
        ```
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HTTP client.

        Args:
            base_url: Base URL for the API.
            timeout: Request timeout in seconds.
            headers: Default headers to include in all requests.
            transport: Optional transport (``httpx.MockTransport`` in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_headers = headers or {}

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=self.default_headers,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
            ),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client and release connections."""
        await self.client.aclose()

    async def __aenter__(self) -> BaseHTTPClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any] | None:
        logger.debug(
            f"{method} request to {self.base_url}{path}",
            extra={"path": path, "params": kwargs.get("params")},
        )

        started = time.perf_counter()
        response = await self.client.request(method, path, **kwargs)
        duration_ms = (time.perf_counter() - started) * 1000

        logger.debug(
            f"{method} response from {self.base_url}{path}",
            extra={
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

        response.raise_for_status()

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError(
                f"{method} {path} returned a non-JSON body: {e}",
                response=response,
            ) from e

    @_idempotent_retry
    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """Make GET request.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
            httpx.TimeoutException: On timeout.
        """
        return await self._send("GET", path, params=params, headers=headers)

    async def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """Make POST request (never retried)."""
        return await self._send("POST", path, json=json, headers=headers)

    async def patch(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """Make PATCH request (never retried)."""
        return await self._send("PATCH", path, json=json, headers=headers)

    @_idempotent_retry
    async def delete(
        self,
        path: str,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """Make DELETE request.

        Returns:
            JSON response data if available, None for 204/empty bodies.
        """
        return await self._send("DELETE", path, headers=headers)
