"""Signed download URL resolution.

Provides:
- Disposition normalization (``inline``/``attachment``, anything else is
  treated as ``attachment``)
- ``SignedUrlResolver``: exchanges a server file id for a short-lived URL
  through the descriptor API, with an optional one-byte liveness check
- ``PresignedDownloadUrl``: URL plus expiry for backends that sign locally
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from storage_gateway.infra.storage import metrics
from storage_gateway.infra.storage.backends.protocol import ContentDisposition
from storage_gateway.infra.storage.exceptions import (
    StorageProtocolError,
    StorageTransportError,
    map_http_error,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


def normalize_disposition(value: str | ContentDisposition | None) -> ContentDisposition:
    """Coerce a requested disposition; unknown values fall back to attachment."""
    if isinstance(value, ContentDisposition):
        return value
    if isinstance(value, str):
        try:
            return ContentDisposition(value.strip().lower())
        except ValueError:
            logger.debug("Unknown disposition, using attachment", extra={"disposition": value})
    return ContentDisposition.ATTACHMENT


@dataclass
class PresignedDownloadUrl:
    """Presigned download URL with metadata."""

    url: str
    key: str
    expires_at: datetime
    expires_in_seconds: int
    disposition: ContentDisposition = ContentDisposition.ATTACHMENT

    @classmethod
    def from_ttl(
        cls,
        url: str,
        key: str,
        ttl: int,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> PresignedDownloadUrl:
        return cls(
            url=url,
            key=key,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
            expires_in_seconds=ttl,
            disposition=disposition,
        )

    def is_expired(self) -> bool:
        """Check if the URL has expired."""
        return datetime.now(UTC) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for CLI/JSON output."""
        return {
            "url": self.url,
            "key": self.key,
            "expires_at": self.expires_at.isoformat(),
            "expires_in_seconds": self.expires_in_seconds,
            "disposition": self.disposition.value,
        }


class SignedUrlSource(Protocol):
    """Metadata endpoint that mints signed URLs for a file id."""

    async def request_signed_url(
        self,
        file_id: str,
        disposition: ContentDisposition,
    ) -> Mapping[str, Any]: ...


def extract_signed_url(data: Mapping[str, Any] | None) -> str | None:
    """Pull the URL out of a download response (``signedUrl``, else ``returnUrl``)."""
    if not data:
        return None
    for field in ("signedUrl", "returnUrl"):
        url = data.get(field)
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


class SignedUrlResolver:
    """Resolve server file ids to short-lived download URLs.

    The descriptor API mediates every access, so URLs always come from its
    metadata endpoint rather than from the object store.

    Example:
        resolver = SignedUrlResolver(api, content_client, verify=False)
        url = await resolver.resolve("f_123", disposition="inline")
    """

    def __init__(
        self,
        source: SignedUrlSource,
        content_client: httpx.AsyncClient,
        *,
        verify: bool = False,
        backend_name: str = "descriptor",
    ) -> None:
        self._source = source
        self._content_client = content_client
        self.verify = verify
        self.backend_name = backend_name

    async def resolve(
        self,
        file_id: str,
        disposition: str | ContentDisposition | None = ContentDisposition.ATTACHMENT,
        verify: bool | None = None,
    ) -> str:
        """Resolve a signed URL for a file id.

        Args:
            file_id: Server-assigned file identity
            disposition: Requested Content-Disposition
            verify: Probe the URL before returning; None uses the resolver default

        Returns:
            Signed URL

        Raises:
            StorageProtocolError: If the response carries no URL
            StorageTransportError: If the liveness check fails
        """
        chosen = normalize_disposition(disposition)
        data = await self._source.request_signed_url(file_id, chosen)
        url = extract_signed_url(data)
        if url is None:
            raise StorageProtocolError(
                f"Signed URL response for {file_id} did not contain a URL",
                metadata={"file_id": file_id, "disposition": chosen.value},
            )

        should_verify = self.verify if verify is None else verify
        if should_verify:
            await self.check_liveness(url, file_id)

        metrics.storage_signed_urls_resolved.labels(
            backend=self.backend_name,
            verified=str(should_verify).lower(),
        ).inc()
        return url

    async def check_liveness(self, url: str, file_id: str) -> None:
        """Fetch and discard the first byte of a signed URL.

        A 416 counts as live: the URL authenticated and the object exists but
        is empty, so there is no first byte to return.

        Raises:
            StorageTransportError: If the URL answers with any other status >= 400
            StorageTimeoutError: If the request times out
        """
        try:
            async with self._content_client.stream(
                "GET", url, headers={"Range": "bytes=0-0"}
            ) as response:
                if response.status_code >= 400 and response.status_code != 416:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise StorageTransportError(
                        f"Signed URL for {file_id} failed verification: HTTP {response.status_code}",
                        http_status=response.status_code,
                        response_body=body,
                        metadata={"file_id": file_id, "operation": "verify_signed_url"},
                    )
                await response.aread()
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="verify_signed_url", target=file_id) from e
