"""HTTP clients for the descriptor storage API.

Two clients with deliberately separate credentials:

- ``DescriptorClient`` talks JSON to the metadata API and always sends
  ``X-API-Key``.
- ``ContentTransferClient`` talks to presigned URLs (upload PUT, signed
  download GET). It never carries the API key.

Wire contract (relative to ``{api_url}{api_prefix}``):

    POST   /files                                   create descriptor
    POST   /files/{id}/upload                       commit
    GET    /files/{id}                              metadata
    GET    /files/by-external-id/{external_id}      lookup
    GET    /files?project_id&limit&offset&...       list page
    GET    /files/{id}/download?returnSignedUrl=true&disposition=...
    PATCH  /files/{id}/visibility                   visibility preference
    DELETE /files/{id}, /files/by-external-id/{external_id}

Responses are wrapped as ``{"data": ...}``; 204 means no body.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from storage_gateway.infra.external.base_client import BaseHTTPClient
from storage_gateway.infra.storage.backends.protocol import (
    ContentDisposition,
    FileRecord,
    UploadStatus,
    Visibility,
)
from storage_gateway.infra.storage.exceptions import (
    StorageFileNotFoundError,
    StorageProtocolError,
    StorageTransportError,
    map_http_error,
)
from storage_gateway.infra.storage.operations.upload import UploadDescriptor
from storage_gateway.infra.storage.path import DEFAULT_CONTENT_TYPE

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, Mapping

logger = logging.getLogger(__name__)


def _unwrap(payload: Any) -> Any:
    """Strip the ``{"data": ...}`` envelope when present."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def _parse_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_visibility(value: Any) -> Visibility | None:
    try:
        return Visibility(value) if value else None
    except ValueError:
        return None


def _parse_status(value: Any) -> UploadStatus:
    try:
        return UploadStatus(value)
    except ValueError:
        return UploadStatus.PENDING


class DescriptorClient(BaseHTTPClient):
    """Metadata API client authenticated with ``X-API-Key``.

    Every method maps httpx failures onto the storage exception taxonomy
    with the operation name and target id attached.

    Example:
        ```python
        async with DescriptorClient("https://api.example.com", api_key) as client:
            record = await client.get_file("f_123")
        ```
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        api_prefix: str = "/api/v1/storage",
        project_id: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_prefix = api_prefix
        self.project_id = project_id
        super().__init__(
            base_url=f"{self.api_url}{api_prefix}",
            timeout=timeout,
            headers={"X-API-Key": api_key, "Accept": "application/json"},
            transport=transport,
        )

    def download_url(self, file_id: str) -> str:
        """Canonical mediated download endpoint of a file."""
        return f"{self.base_url}/files/{quote(file_id, safe='')}/download"

    def to_record(self, data: Mapping[str, Any]) -> FileRecord:
        """Convert an API file payload to a ``FileRecord``."""
        file_id = str(data.get("file_id") or "")
        if not file_id:
            raise StorageProtocolError(
                "File payload is missing file_id", metadata={"payload_keys": sorted(data)}
            )
        metadata = {str(k): str(v) for k, v in (data.get("metadata") or {}).items()}
        uploaded_at = _parse_datetime(data.get("uploaded_at"))
        updated_at = _parse_datetime(data.get("updated_at"))
        return FileRecord(
            key=data.get("storage_key") or data.get("file_path") or file_id,
            content_type=data.get("content_type") or DEFAULT_CONTENT_TYPE,
            file_id=file_id,
            external_id=data.get("external_id") or file_id,
            expected_size=data.get("expected_file_size"),
            actual_size=data.get("actual_file_size"),
            upload_status=_parse_status(data.get("upload_status")),
            metadata=metadata,
            visibility=_parse_visibility(metadata.get("visibility")),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=updated_at,
            uploaded_at=uploaded_at,
            last_modified=uploaded_at or updated_at,
            url=self.download_url(file_id),
            etag=data.get("etag"),
        )

    # ========================================================================
    # Upload protocol
    # ========================================================================

    async def create_descriptor(self, payload: dict[str, Any]) -> UploadDescriptor:
        """Reserve a file id and presigned upload URL."""
        target = payload.get("original_filename")
        try:
            data = _unwrap(await self.post("/files", json=payload))
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="create_descriptor", target=target) from e

        if not data or not data.get("file_id") or not data.get("upload_url"):
            raise StorageProtocolError(
                "Descriptor response is missing file_id or upload_url",
                metadata={"operation": "create_descriptor", "target": target},
            )
        return UploadDescriptor(
            file_id=str(data["file_id"]),
            upload_url=data["upload_url"],
            expires_at=_parse_datetime(data.get("expires_at")),
        )

    async def commit_upload(self, file_id: str, actual_size: int) -> None:
        """Report the transmitted size and mark the upload complete."""
        try:
            await self.post(
                f"/files/{quote(file_id, safe='')}/upload",
                json={"actual_file_size": actual_size},
            )
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="commit", target=file_id) from e

    # ========================================================================
    # Lookup and listing
    # ========================================================================

    async def get_file(self, file_id: str) -> FileRecord:
        """Fetch one record by file id.

        Raises:
            StorageFileNotFoundError: If the id is unknown
        """
        try:
            data = _unwrap(await self.get(f"/files/{quote(file_id, safe='')}"))
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="get_file", target=file_id) from e
        if not data:
            raise StorageFileNotFoundError(f"File {file_id} not found", metadata={"file_id": file_id})
        return self.to_record(data)

    async def get_file_by_external_id(self, external_id: str) -> FileRecord | None:
        """Fetch one record by external id; None when there is none."""
        try:
            data = _unwrap(await self.get(f"/files/by-external-id/{quote(external_id, safe='')}"))
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise map_http_error(e, operation="find_by_external_id", target=external_id) from e
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="find_by_external_id", target=external_id) from e
        return self.to_record(data) if data else None

    async def list_page(
        self,
        *,
        limit: int,
        offset: int = 0,
        path_prefix: str | None = None,
        external_id: str | None = None,
    ) -> tuple[list[FileRecord], int | None, bool]:
        """Fetch one native page.

        Returns:
            (records, total_count reported by the API, has_more)
        """
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if self.project_id:
            params["project_id"] = self.project_id
        if path_prefix:
            params["path_prefix"] = path_prefix
        if external_id:
            params["external_id"] = external_id

        try:
            data = _unwrap(await self.get("/files", params=params)) or {}
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="list", target=path_prefix) from e

        files = [self.to_record(item) for item in data.get("files") or []]
        return files, data.get("total_count"), bool(data.get("has_more"))

    # ========================================================================
    # Signed URLs, visibility, deletion
    # ========================================================================

    async def request_signed_url(
        self,
        file_id: str,
        disposition: ContentDisposition,
    ) -> dict[str, Any]:
        """Ask the API for a signed download URL."""
        try:
            payload = await self.get(
                f"/files/{quote(file_id, safe='')}/download",
                params={"returnSignedUrl": "true", "disposition": disposition.value},
            )
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="resolve_signed_url", target=file_id) from e
        data = _unwrap(payload)
        return data if isinstance(data, dict) else {}

    async def update_visibility(self, file_id: str, visibility: Visibility) -> None:
        """Record a visibility preference."""
        try:
            await self.patch(
                f"/files/{quote(file_id, safe='')}/visibility",
                json={"visibility": Visibility(visibility).value},
            )
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="set_visibility", target=file_id) from e

    async def delete_file(self, file_id: str) -> None:
        try:
            await self.delete(f"/files/{quote(file_id, safe='')}")
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="delete", target=file_id) from e

    async def delete_file_by_external_id(self, external_id: str) -> None:
        try:
            await self.delete(f"/files/by-external-id/{quote(external_id, safe='')}")
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="delete", target=external_id) from e


class ContentTransferClient:
    """Credential-free client for presigned URLs.

    Shares nothing with ``DescriptorClient``: no base URL and no default
    headers, so the API key cannot leak to the object store.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def put_content(
        self,
        url: str,
        body: bytes | AsyncIterable[bytes],
        size: int,
        content_type: str,
    ) -> None:
        """PUT content to a presigned URL with an explicit Content-Length.

        Raises:
            StorageTransportError: On non-2xx responses or network failure
            StorageTimeoutError: On timeout
        """
        try:
            response = await self.client.put(
                url,
                content=body,
                headers={"Content-Type": content_type, "Content-Length": str(size)},
            )
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="transmit", target=url.split("?", 1)[0]) from e

        if response.status_code >= 400:
            raise StorageTransportError(
                f"Content transmission returned HTTP {response.status_code}",
                http_status=response.status_code,
                response_body=response.text,
                metadata={"operation": "transmit", "url": url.split("?", 1)[0]},
            )
        logger.debug(
            "Content transmitted",
            extra={"status_code": response.status_code, "size_bytes": size},
        )
