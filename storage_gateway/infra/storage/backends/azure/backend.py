"""Azure Blob Storage backend implementation.

Implements the StorageBackend protocol for a single blob container using
the async azure-storage-blob client.

Blob names are the keys. The external id, original filename and requested
visibility are stored as blob metadata (``external_id``,
``original_filename``, ``visibility``); metadata names must be valid C#
identifiers, so they use underscores. Listing returns metadata inline, so
unlike S3 no per-object HEAD is needed to filter by it.

Azure has no per-blob ACL. Public access is granted with a read-only SAS
URL signed by the account key, reported as ``temporary-public``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
from typing import TYPE_CHECKING, Any, cast

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions, ContentSettings, generate_blob_sas
from azure.storage.blob.aio import BlobServiceClient

from storage_gateway.infra.storage.exceptions import (
    StorageFileNotFoundError,
    StorageNotConfiguredError,
    StorageUploadError,
    map_azure_error,
)
from storage_gateway.infra.storage.operations.download import (
    CancellationScope,
    FileStream,
    build_range_header,
    parse_content_range,
)
from storage_gateway.infra.storage.operations.listing import (
    SEARCH_FETCH_LIMIT,
    list_records,
    search_records,
)
from storage_gateway.infra.storage.operations.upload import iter_upload_source, prepare_upload
from storage_gateway.infra.storage.operations.visibility import visibility_failure
from storage_gateway.infra.storage.path import filename_from_key, infer_content_type

from ..protocol import (
    ContentDisposition,
    FileRecord,
    ListFilesOptions,
    ListFilesResult,
    SearchFilesOptions,
    SearchFilesResult,
    StreamOptions,
    UploadRequest,
    UploadResult,
    Visibility,
    VisibilityResult,
    VisibilityStatus,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from storage_gateway.core.settings.storage import StorageSettings

logger = logging.getLogger(__name__)

# Lifetime of the SAS URL handed out for "public" blobs
PUBLIC_SAS_TTL = timedelta(days=365)


class AzureBlobBackend:
    """Azure Blob Storage backend for one container.

    Attributes:
        settings: Storage configuration settings
        container: Blob container name
        backend_name: Name identifier for this backend ("azure")

    Example:
        backend = AzureBlobBackend(settings)
        await backend.startup()
        result = await backend.upload_file(UploadRequest(external_id="a1", buffer=b"data"))
        await backend.shutdown()
    """

    def __init__(self, settings: StorageSettings, container_client: Any | None = None) -> None:
        """Initialize the Azure backend.

        Args:
            settings: Storage settings with Azure configuration
            container_client: Pre-built container client (tests); skips startup

        Raises:
            StorageNotConfiguredError: If required settings are missing
        """
        missing = settings.missing_settings()
        if missing:
            msg = f"Azure backend not configured. Missing: {', '.join(missing)}"
            raise StorageNotConfiguredError(msg, metadata={"missing": missing})

        self.settings = settings
        self.container = cast("str", settings.container)
        self._service: BlobServiceClient | None = None
        self._container = container_client

    @property
    def backend_name(self) -> str:
        return "azure"

    @property
    def is_ready(self) -> bool:
        return self._container is not None

    # ========================================================================
    # Lifecycle Management
    # ========================================================================

    def _build_service(self) -> BlobServiceClient:
        settings = self.settings
        if settings.azure_connection_string is not None:
            return BlobServiceClient.from_connection_string(
                settings.azure_connection_string.get_secret_value()
            )
        account_url = cast("str", settings.effective_azure_account_url)
        account_key = settings.get_azure_account_key()
        if account_key is not None:
            return BlobServiceClient(
                account_url,
                credential={
                    "account_name": settings.effective_azure_account_name,
                    "account_key": account_key,
                },
            )
        assert settings.azure_sas_token is not None
        return BlobServiceClient(account_url, credential=settings.azure_sas_token.get_secret_value())

    async def startup(self) -> None:
        """Create the blob service client for the configured credential."""
        if self._container is not None:
            logger.debug("Azure backend already initialized")
            return

        logger.info(
            "Initializing Azure backend",
            extra={
                "container": self.container,
                "account_url": self.settings.effective_azure_account_url,
            },
        )
        try:
            self._service = self._build_service()
        except (AzureError, ValueError) as e:
            logger.exception("Failed to initialize Azure backend", extra={"error": str(e)})
            raise StorageNotConfiguredError(
                f"Failed to initialize Azure backend: {e}",
                metadata={"container": self.container},
            ) from e
        self._container = self._service.get_container_client(self.container)
        logger.info("Azure backend initialized successfully")

    async def shutdown(self) -> None:
        """Close the service client and its connection pool."""
        if self._service is None:
            self._container = None
            logger.debug("Azure backend not initialized, nothing to shutdown")
            return

        logger.info("Shutting down Azure backend")
        try:
            await self._service.close()
        finally:
            self._service = None
            self._container = None

    async def health_check(self) -> bool:
        """Check connectivity and credentials by reading the container properties."""
        if self._container is None:
            return False
        try:
            await self._container.get_container_properties()
            return True
        except AzureError as e:
            logger.warning(
                "Azure health check failed",
                extra={"error": str(e), "container": self.container},
            )
            return False

    def _ensure_container(self) -> Any:
        if self._container is None:
            msg = "Azure backend not initialized. Call startup() first."
            raise StorageNotConfiguredError(msg)
        return self._container

    # ========================================================================
    # URLs and SAS signing
    # ========================================================================

    def _blob_url(self, key: str) -> str:
        if self.settings.cdn_url:
            return f"{self.settings.cdn_url.rstrip('/')}/{key}"
        return cast("str", self._ensure_container().get_blob_client(key).url)

    @property
    def can_sign(self) -> bool:
        """Whether an account key is available to sign SAS URLs."""
        return bool(self.settings.get_azure_account_key() and self.settings.effective_azure_account_name)

    def _signed_url(
        self,
        key: str,
        ttl: timedelta,
        disposition: ContentDisposition | None = None,
    ) -> tuple[str, str, datetime]:
        """Sign a read-only SAS for one blob.

        Returns:
            (url, sas_token, expires_at)

        Raises:
            StorageNotConfiguredError: If no account key is configured
        """
        account_key = self.settings.get_azure_account_key()
        account_name = self.settings.effective_azure_account_name
        if not account_key or not account_name:
            raise StorageNotConfiguredError(
                "Signing SAS URLs requires an account key",
                metadata={"missing": ["STORAGE_AZURE_ACCOUNT_KEY"], "key": key},
            )

        expires_at = datetime.now(UTC) + ttl
        token = generate_blob_sas(
            account_name=account_name,
            container_name=self.container,
            blob_name=key,
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=expires_at,
            content_disposition=(
                f'{disposition.value}; filename="{filename_from_key(key)}"' if disposition else None
            ),
        )
        base = self._ensure_container().get_blob_client(key).url.split("?", 1)[0]
        return f"{base}?{token}", token, expires_at

    # ========================================================================
    # Record conversion
    # ========================================================================

    def _record(self, key: str, properties: Any) -> FileRecord:
        metadata = {str(k): str(v) for k, v in (properties.metadata or {}).items()}
        content_settings = getattr(properties, "content_settings", None)
        visibility = metadata.get("visibility")
        return FileRecord(
            key=key,
            content_type=getattr(content_settings, "content_type", None) or infer_content_type(key),
            external_id=metadata.get("external_id") or None,
            actual_size=properties.size or 0,
            metadata=metadata,
            visibility=Visibility(visibility) if visibility in set(Visibility) else None,
            created_at=getattr(properties, "creation_time", None),
            last_modified=properties.last_modified,
            url=self._blob_url(key),
            etag=(properties.etag or "").strip('"') or None,
        )

    # ========================================================================
    # Upload / Delete
    # ========================================================================

    async def upload_file(self, request: UploadRequest) -> UploadResult:
        """Upload a block blob, streaming non-buffer sources.

        Public requests are answered with a one-year SAS URL when an account
        key is configured; otherwise the blob stays private.

        Raises:
            StorageProtocolError: If the source invariants are violated
            StorageUploadError: If the read or the upload fails
        """
        container = self._ensure_container()
        prepared = await prepare_upload(request, self.settings.key_namespace)
        metadata = {
            **prepared.metadata,
            "external_id": request.external_id,
            "original_filename": prepared.filename,
            "visibility": str(request.visibility),
        }
        data: Any = (
            request.buffer
            if request.buffer is not None
            else iter_upload_source(request, self.settings.streaming_chunk_size)
        )

        blob = container.get_blob_client(prepared.key)
        try:
            response = await blob.upload_blob(
                data,
                length=prepared.size,
                overwrite=True,
                metadata=metadata,
                content_settings=ContentSettings(content_type=prepared.content_type),
            )
        except AzureError as e:
            mapped = map_azure_error(e, operation="upload", key=prepared.key)
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: {mapped.message}",
                metadata={"filename": prepared.filename, "key": prepared.key, **mapped.extra},
            ) from e
        except OSError as e:
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: read failed: {e}",
                metadata={"filename": prepared.filename, "key": prepared.key, "step": "read"},
            ) from e

        public_requested = request.visibility != Visibility.PRIVATE
        public_url: str | None = None
        if public_requested and self.can_sign:
            public_url, _, _ = self._signed_url(prepared.key, PUBLIC_SAS_TTL)
        elif public_requested:
            logger.warning(
                "Public upload stays private without an account key",
                extra={"key": prepared.key, "container": self.container},
            )

        logger.info(
            "Blob uploaded to Azure",
            extra={
                "key": prepared.key,
                "container": self.container,
                "size_bytes": prepared.size,
                "content_type": prepared.content_type,
                "public": public_url is not None,
            },
        )

        return UploadResult(
            external_id=request.external_id,
            key=prepared.key,
            url=self._blob_url(prepared.key),
            size=prepared.size,
            content_type=prepared.content_type,
            visibility=request.visibility,
            actual_visibility=Visibility.TEMPORARY_PUBLIC if public_url else Visibility.PRIVATE,
            public_url=public_url,
            metadata=metadata,
            etag=(response.get("etag") or "").strip('"') or None,
        )

    async def delete_file(self, key: str) -> None:
        """Delete a blob.

        Raises:
            StorageFileNotFoundError: If the blob does not exist
        """
        blob = self._ensure_container().get_blob_client(key)
        try:
            await blob.delete_blob()
        except AzureError as e:
            raise map_azure_error(e, operation="delete", key=key) from e
        logger.info("Blob deleted from Azure", extra={"key": key, "container": self.container})

    async def delete_file_by_external_id(self, external_id: str) -> None:
        record = await self._require_external(external_id)
        await self.delete_file(record.key)

    # ========================================================================
    # Lookup
    # ========================================================================

    async def find_file(self, key: str) -> FileRecord | None:
        blob = self._ensure_container().get_blob_client(key)
        try:
            properties = await blob.get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise map_azure_error(e, operation="find", key=key) from e
        return self._record(key, properties)

    async def _require(self, key: str) -> FileRecord:
        record = await self.find_file(key)
        if record is None:
            raise StorageFileNotFoundError(f"File with key {key} not found", metadata={"key": key})
        return record

    async def find_file_by_external_id(self, external_id: str) -> FileRecord | None:
        """Scan the container listing (metadata included) for the external id."""
        async for properties in self._iter_blobs(limit=self.settings.list_max_records):
            if (properties.metadata or {}).get("external_id") == external_id:
                return self._record(properties.name, properties)
        return None

    async def _require_external(self, external_id: str) -> FileRecord:
        record = await self.find_file_by_external_id(external_id)
        if record is None:
            raise StorageFileNotFoundError(
                f"File with external_id {external_id} not found",
                metadata={"external_id": external_id},
            )
        return record

    # ========================================================================
    # URLs and Streams
    # ========================================================================

    async def get_file_url(
        self,
        key: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        """Sign a read SAS URL; without an account key, the CDN or blob URL."""
        await self._require(key)
        if not self.can_sign:
            return self._blob_url(key)
        expires_in = ttl or self.settings.presigned_url_expiry_seconds
        url, _, _ = self._signed_url(key, timedelta(seconds=expires_in), disposition)
        logger.debug(
            "Generated SAS download URL",
            extra={"key": key, "container": self.container, "expires_in": expires_in},
        )
        return url

    async def get_file_url_by_external_id(
        self,
        external_id: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        record = await self._require_external(external_id)
        return await self.get_file_url(record.key, ttl, disposition)

    async def open_stream(self, key: str, options: StreamOptions) -> FileStream:
        """Open a (ranged) download with ``download_blob``."""
        build_range_header(options.start, options.end)
        blob = self._ensure_container().get_blob_client(key)
        scope = CancellationScope(options.timeout, options.cancel_event, operation="stream", target=key)

        kwargs: dict[str, Any] = {}
        if options.is_range:
            start = options.start or 0
            kwargs["offset"] = start
            if options.end is not None:
                kwargs["length"] = options.end - start + 1

        try:
            downloader = await scope.run(blob.download_blob(**kwargs))
        except AzureError as e:
            raise map_azure_error(e, operation="stream", key=key) from e

        properties = downloader.properties
        content_settings = getattr(properties, "content_settings", None)
        content_range = parse_content_range(getattr(properties, "content_range", None))

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in downloader.chunks():
                    yield bytes(chunk)
            except AzureError as e:
                raise map_azure_error(e, operation="stream", key=key) from e

        async def _release() -> None:
            return None

        partial = options.is_range
        return FileStream(
            key=key,
            chunks=_chunks(),
            release=_release,
            status_code=206 if partial else 200,
            content_length=downloader.size,
            content_type=getattr(content_settings, "content_type", None),
            last_modified=getattr(properties, "last_modified", None),
            etag=(getattr(properties, "etag", None) or "").strip('"') or None,
            accepts_ranges=True,
            content_range=content_range if partial else None,
            scope=scope,
        )

    async def open_stream_by_external_id(
        self,
        external_id: str,
        options: StreamOptions,
    ) -> FileStream:
        record = await self._require_external(external_id)
        return await self.open_stream(record.key, options)

    # ========================================================================
    # Listing and Search
    # ========================================================================

    async def _iter_blobs(
        self,
        prefix: str = "",
        limit: int | None = None,
    ) -> AsyncIterator[Any]:
        """Page through ``list_blobs`` with metadata included."""
        container = self._ensure_container()
        pages = container.list_blobs(name_starts_with=prefix or None, include=["metadata"])
        seen = 0
        while True:
            try:
                properties = await anext(pages)
            except StopAsyncIteration:
                return
            except AzureError as e:
                raise map_azure_error(e, operation="list", key=prefix or None) from e
            if limit is not None and seen >= limit:
                return
            seen += 1
            yield properties

    async def _fetch_superset(self, bound: int, prefix: str = "") -> tuple[list[FileRecord], bool]:
        records = [
            self._record(properties.name, properties)
            async for properties in self._iter_blobs(prefix, limit=bound + 1)
        ]
        truncated = len(records) > bound
        return records[:bound], truncated

    async def list_files(self, options: ListFilesOptions) -> ListFilesResult:
        """List with native prefix narrowing; filters run on the inline metadata."""
        records, truncated = await self._fetch_superset(
            self.settings.list_max_records, options.prefix or ""
        )
        return list_records(records, options, truncated=truncated)

    async def search_files(self, options: SearchFilesOptions) -> SearchFilesResult:
        records, truncated = await self._fetch_superset(SEARCH_FETCH_LIMIT)
        return search_records(records, options, truncated=truncated)

    # ========================================================================
    # Visibility (SAS)
    # ========================================================================

    async def set_visibility(self, key: str, visibility: Visibility) -> VisibilityResult:
        """Grant public access with a one-year read SAS; private needs no change."""
        visibility = Visibility(visibility)
        if await self.find_file(key) is None:
            return visibility_failure(visibility, f"File with key {key} not found")

        if visibility == Visibility.PRIVATE:
            return VisibilityResult(
                success=True,
                requested_visibility=visibility,
                actual_visibility=Visibility.PRIVATE,
                message="File is private. Access requires authentication or a valid SAS token.",
            )

        try:
            url, token, expires_at = self._signed_url(key, PUBLIC_SAS_TTL)
        except StorageNotConfiguredError as e:
            return visibility_failure(visibility, f"Failed to generate SAS token: {e.message}")

        logger.info("Issued public SAS URL", extra={"key": key, "expires_at": expires_at.isoformat()})
        return VisibilityResult(
            success=True,
            requested_visibility=visibility,
            actual_visibility=Visibility.TEMPORARY_PUBLIC,
            public_url=url,
            public_url_expires_at=expires_at,
            message=(
                "Azure Blob Storage uses SAS tokens for public access. "
                "Token valid for 1 year and can be regenerated."
            ),
            provider_specific={"sas_token": token, "expiration_extensible": True},
        )

    async def set_visibility_by_external_id(
        self,
        external_id: str,
        visibility: Visibility,
    ) -> VisibilityResult:
        record = await self.find_file_by_external_id(external_id)
        if record is None:
            return visibility_failure(visibility, f"File with external_id {external_id} not found")
        return await self.set_visibility(record.key, visibility)

    async def get_visibility(self, key: str) -> VisibilityStatus:
        """Blobs are always private; public access exists only as SAS URLs."""
        await self._require(key)
        return VisibilityStatus(
            visibility=Visibility.PRIVATE,
            can_make_public=self.can_sign,
            can_make_private=True,
            supports_temporary_access=True,
            message=(
                "Azure Blob Storage requires SAS tokens for public access. "
                "Use set_visibility to generate a temporary public URL."
            ),
        )

    async def get_visibility_by_external_id(self, external_id: str) -> VisibilityStatus:
        record = await self._require_external(external_id)
        return await self.get_visibility(record.key)


__all__ = ["AzureBlobBackend"]
