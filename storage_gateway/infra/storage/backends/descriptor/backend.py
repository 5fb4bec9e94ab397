"""Descriptor-mediated storage backend.

Implements the StorageBackend protocol against a remote storage API that
reserves a file identity before content exists and mediates every access
through short-lived signed URLs.

Credentials are resolved once in ``startup()``:
- API key: explicit setting, else the ordered credential resolvers
- API URL: explicit setting, else environment, else the default
- Project id: explicit setting, else environment, else the project file
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from storage_gateway.infra.credentials.resolvers import (
    build_default_resolvers,
    resolve_api_base_url,
    resolve_api_key,
    resolve_project_id,
)
from storage_gateway.infra.storage.exceptions import (
    StorageError,
    StorageFileNotFoundError,
    StorageNotConfiguredError,
)
from storage_gateway.infra.storage.operations.download import FileStream, open_range_stream
from storage_gateway.infra.storage.operations.listing import (
    SEARCH_FETCH_LIMIT,
    list_records,
    search_records,
)
from storage_gateway.infra.storage.operations.presigned import SignedUrlResolver
from storage_gateway.infra.storage.operations.upload import UploadOrchestrator
from storage_gateway.infra.storage.operations.visibility import (
    descriptor_visibility_result,
    descriptor_visibility_status,
    visibility_failure,
)

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
from .client import ContentTransferClient, DescriptorClient

if TYPE_CHECKING:
    import httpx

    from storage_gateway.core.settings.credentials import CredentialSettings
    from storage_gateway.core.settings.storage import StorageSettings
    from storage_gateway.infra.credentials.resolvers import ApiKeyResolver

logger = logging.getLogger(__name__)


class DescriptorBackend:
    """Storage backend for the descriptor storage API.

    Attributes:
        settings: Storage configuration settings
        backend_name: Name identifier for this backend ("descriptor")
        is_ready: Whether credentials are resolved and clients exist

    Example:
        backend = DescriptorBackend(settings)
        await backend.startup()
        result = await backend.upload_file(UploadRequest(external_id="t1", buffer=b"hi"))
        await backend.shutdown()
    """

    def __init__(
        self,
        settings: StorageSettings,
        *,
        credential_settings: CredentialSettings | None = None,
        resolvers: list[ApiKeyResolver] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        content_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize descriptor backend.

        Args:
            settings: Storage settings
            credential_settings: How to resolve key, URL and project id
            resolvers: Explicit API key resolver chain (overrides the default chain)
            transport: Transport for the metadata API client (tests)
            content_transport: Transport for the presigned URL client (tests)
        """
        if credential_settings is None:
            from storage_gateway.core.settings import get_credential_settings

            credential_settings = get_credential_settings()

        self.settings = settings
        self.credential_settings = credential_settings
        self._resolvers = resolvers
        self._transport = transport
        self._content_transport = content_transport
        self._client: DescriptorClient | None = None
        self._content: ContentTransferClient | None = None
        self._orchestrator: UploadOrchestrator | None = None
        self._resolver: SignedUrlResolver | None = None

    @property
    def backend_name(self) -> str:
        return "descriptor"

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    # ========================================================================
    # Lifecycle Management
    # ========================================================================

    async def startup(self) -> None:
        """Resolve credentials and create the API and content clients.

        Raises:
            StorageNotConfiguredError: If no API key or project id can be resolved
        """
        if self._client is not None:
            logger.debug("Descriptor backend already initialized")
            return

        if self.settings.api_key is not None:
            api_key = self.settings.api_key.get_secret_value()
        else:
            resolvers = self._resolvers
            if resolvers is None:
                resolvers = build_default_resolvers(self.credential_settings)
            api_key = await resolve_api_key(resolvers)

        api_url = self.settings.api_url or resolve_api_base_url(self.credential_settings)
        project_id = self.settings.project_id or resolve_project_id(self.credential_settings)
        if not project_id:
            raise StorageNotConfiguredError(
                "Project id is required for the descriptor backend. "
                f"Set STORAGE_PROJECT_ID or add [project] id to {self.credential_settings.project_file_name}.",
                metadata={"backend": self.backend_name},
            )

        logger.info(
            "Initializing descriptor backend",
            extra={"api_url": api_url, "project_id": project_id},
        )

        self._client = DescriptorClient(
            api_url,
            api_key,
            api_prefix=self.settings.api_prefix,
            project_id=project_id,
            timeout=self.settings.timeout,
            transport=self._transport,
        )
        self._content = ContentTransferClient(
            timeout=self.settings.timeout,
            transport=self._content_transport,
        )
        self._orchestrator = UploadOrchestrator(
            self._client,
            self._content,
            project_id=project_id,
            namespace=self.settings.key_namespace,
            chunk_size=self.settings.streaming_chunk_size,
            cleanup_failed_uploads=self.settings.cleanup_failed_uploads,
        )
        self._resolver = SignedUrlResolver(
            self._client,
            self._content.client,
            verify=self.settings.verify_signed_urls,
            backend_name=self.backend_name,
        )

    async def shutdown(self) -> None:
        """Close both HTTP clients."""
        if self._client is None:
            logger.debug("Descriptor backend not initialized, nothing to shutdown")
            return

        logger.info("Shutting down descriptor backend")
        try:
            await self._client.close()
            if self._content is not None:
                await self._content.close()
        finally:
            self._client = None
            self._content = None
            self._orchestrator = None
            self._resolver = None

    async def health_check(self) -> bool:
        """Check API reachability and credentials with a one-record listing."""
        if self._client is None:
            return False
        try:
            await self._client.list_page(limit=1)
            return True
        except StorageError as e:
            logger.warning("Descriptor health check failed", extra={"error": e.message})
            return False

    def _ensure_client(self) -> DescriptorClient:
        if self._client is None:
            msg = "Descriptor backend not initialized. Call startup() first."
            raise StorageNotConfiguredError(msg)
        return self._client

    # ========================================================================
    # Lookup helpers
    # ========================================================================

    async def _fetch_superset(
        self,
        bound: int,
        *,
        path_prefix: str | None = None,
        external_id: str | None = None,
    ) -> tuple[list[FileRecord], bool]:
        """Page through the native listing until exhausted or ``bound`` is hit.

        Returns:
            (records, truncated)
        """
        client = self._ensure_client()
        page_size = min(self.settings.list_page_size, bound)
        records: list[FileRecord] = []
        offset = 0
        while True:
            page, _, has_more = await client.list_page(
                limit=page_size,
                offset=offset,
                path_prefix=path_prefix,
                external_id=external_id,
            )
            records.extend(page)
            offset += len(page)
            if not has_more or not page:
                return records[:bound], False
            if len(records) >= bound:
                logger.info(
                    "Listing superset truncated",
                    extra={"bound": bound, "path_prefix": path_prefix},
                )
                return records[:bound], True

    async def find_file(self, key: str) -> FileRecord | None:
        """Find a record by storage key.

        The API has no lookup by key, so this scans the listing superset.
        """
        records, _ = await self._fetch_superset(self.settings.list_max_records)
        for record in records:
            if record.key == key:
                return record
        return None

    async def find_file_by_external_id(self, external_id: str) -> FileRecord | None:
        return await self._ensure_client().get_file_by_external_id(external_id)

    async def _require(self, key: str) -> FileRecord:
        record = await self.find_file(key)
        if record is None:
            raise StorageFileNotFoundError(
                f"File with storage key {key} not found", metadata={"key": key}
            )
        return record

    async def _require_external(self, external_id: str) -> FileRecord:
        record = await self.find_file_by_external_id(external_id)
        if record is None:
            raise StorageFileNotFoundError(
                f"File with external_id {external_id} not found",
                metadata={"external_id": external_id},
            )
        return record

    # ========================================================================
    # Upload / Delete
    # ========================================================================

    async def upload_file(self, request: UploadRequest) -> UploadResult:
        """Upload through the create/transmit/commit/refetch protocol."""
        self._ensure_client()
        assert self._orchestrator is not None
        record = await self._orchestrator.upload(request)
        return UploadResult(
            external_id=request.external_id,
            key=record.key,
            url=record.url,
            size=record.size,
            content_type=record.content_type,
            file_id=record.file_id,
            upload_status=record.upload_status,
            visibility=request.visibility,
            actual_visibility=Visibility.PRIVATE,
            metadata=dict(record.metadata),
            etag=record.etag,
        )

    async def delete_file(self, key: str) -> None:
        record = await self._require(key)
        await self._ensure_client().delete_file(record.identity)
        logger.info("File deleted", extra={"key": key, "file_id": record.file_id})

    async def delete_file_by_external_id(self, external_id: str) -> None:
        await self._ensure_client().delete_file_by_external_id(external_id)
        logger.info("File deleted", extra={"external_id": external_id})

    # ========================================================================
    # URLs and Streams
    # ========================================================================

    async def get_file_url(
        self,
        key: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        """Resolve a signed URL; ``ttl`` is decided server-side and ignored."""
        record = await self._require(key)
        assert self._resolver is not None
        return await self._resolver.resolve(record.identity, disposition)

    async def get_file_url_by_external_id(
        self,
        external_id: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        record = await self._require_external(external_id)
        assert self._resolver is not None
        return await self._resolver.resolve(record.identity, disposition)

    async def _open(self, record: FileRecord, options: StreamOptions) -> FileStream:
        assert self._resolver is not None and self._content is not None
        url = await self._resolver.resolve(record.identity, options.disposition)
        return await open_range_stream(
            self._content.client,
            url,
            options,
            key=record.key,
            etag_fallback=record.file_id,
        )

    async def open_stream(self, key: str, options: StreamOptions) -> FileStream:
        return await self._open(await self._require(key), options)

    async def open_stream_by_external_id(
        self,
        external_id: str,
        options: StreamOptions,
    ) -> FileStream:
        return await self._open(await self._require_external(external_id), options)

    # ========================================================================
    # Listing and Search
    # ========================================================================

    async def list_files(self, options: ListFilesOptions) -> ListFilesResult:
        """List with native prefix/external-id narrowing, the rest client-side."""
        external_id = (
            options.external_ids[0]
            if options.external_ids is not None and len(options.external_ids) == 1
            else None
        )
        records, truncated = await self._fetch_superset(
            self.settings.list_max_records,
            path_prefix=options.prefix,
            external_id=external_id,
        )
        return list_records(records, options, truncated=truncated)

    async def search_files(self, options: SearchFilesOptions) -> SearchFilesResult:
        records, truncated = await self._fetch_superset(SEARCH_FETCH_LIMIT)
        return search_records(records, options, truncated=truncated)

    # ========================================================================
    # Visibility
    # ========================================================================

    async def _set_visibility(
        self,
        record: FileRecord | None,
        visibility: Visibility,
        target: str,
    ) -> VisibilityResult:
        if record is None:
            return visibility_failure(visibility, f"File {target} not found")
        try:
            await self._ensure_client().update_visibility(record.identity, visibility)
        except StorageError as e:
            return visibility_failure(visibility, f"Failed to set file visibility: {e.message}")
        return descriptor_visibility_result(visibility)

    async def set_visibility(self, key: str, visibility: Visibility) -> VisibilityResult:
        """Record the preference; actual visibility stays private."""
        return await self._set_visibility(await self.find_file(key), visibility, f"with key {key}")

    async def set_visibility_by_external_id(
        self,
        external_id: str,
        visibility: Visibility,
    ) -> VisibilityResult:
        return await self._set_visibility(
            await self.find_file_by_external_id(external_id),
            visibility,
            f"with external_id {external_id}",
        )

    async def get_visibility(self, key: str) -> VisibilityStatus:
        await self._require(key)
        return descriptor_visibility_status()

    async def get_visibility_by_external_id(self, external_id: str) -> VisibilityStatus:
        await self._require_external(external_id)
        return descriptor_visibility_status()
