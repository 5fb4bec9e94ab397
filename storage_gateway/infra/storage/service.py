"""Caller-owned storage service with full observability.

This module provides the main interface for storage operations with:
- Explicit ownership: callers construct, start and shut down their own
  instance (there is no process-wide singleton)
- Automatic OpenTelemetry spans and Prometheus metrics on every operation
- Lifecycle management (startup/shutdown) and health checks
- Protocol-based backend abstraction (descriptor API, S3-compatible, local)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from storage_gateway.core.settings import get_storage_settings

from .backends.factory import create_storage_backend
from .backends.protocol import (
    ListFilesOptions,
    SearchFilesOptions,
    StreamOptions,
    UploadStatus,
    Visibility,
)
from .exceptions import StorageNotConfiguredError
from .instrumentation import track_storage_operation
from .operations.presigned import normalize_disposition
from .operations.upload import prepare_upload
from .operations.validation import require_valid_file
from .operations.visibility import guarded_set_visibility

if TYPE_CHECKING:
    from storage_gateway.core.settings.storage import StorageSettings

    from .backends.protocol import (
        ContentDisposition,
        FileRecord,
        ListFilesResult,
        SearchFilesResult,
        StorageBackend,
        UploadRequest,
        UploadResult,
        VisibilityResult,
        VisibilityStatus,
    )
    from .operations.download import FileStream
    from .operations.validation import FileValidationOptions

logger = logging.getLogger(__name__)


class StorageService:
    """High-level storage service with observability.

    Provides:
    - One backend per instance, selected from settings by the factory
    - Automatic metrics and tracing for all operations
    - Lifecycle management (startup/shutdown, or ``async with``)
    - Health check integration

    Example:
        async with StorageService() as storage:
            result = await storage.upload_file(
                UploadRequest(external_id="invoice-42", file_path="invoice.pdf")
            )
            url = await storage.get_file_url(result.key, disposition="inline")
    """

    def __init__(
        self,
        settings: StorageSettings | None = None,
        backend: StorageBackend | None = None,
        **backend_kwargs: Any,
    ) -> None:
        """Initialize storage service.

        Args:
            settings: Optional settings override. If not provided,
                     loads from environment via get_storage_settings()
            backend: Pre-built backend; skips the factory
            **backend_kwargs: Passed to the backend constructor by the factory
        """
        self._settings = settings or get_storage_settings()
        self._backend = backend
        self._backend_kwargs = backend_kwargs
        self._initialized = False

    @property
    def is_ready(self) -> bool:
        """Check if the service is initialized and ready for operations."""
        return self._initialized and self._backend is not None and self._backend.is_ready

    @property
    def settings(self) -> StorageSettings:
        return self._settings

    @property
    def backend(self) -> StorageBackend | None:
        return self._backend

    @property
    def backend_name(self) -> str | None:
        return self._backend.backend_name if self._backend is not None else None

    async def startup(self) -> None:
        """Create the backend and resolve its credentials.

        Raises:
            StorageNotConfiguredError: If the provider is not configured or
                credentials cannot be resolved
        """
        if self._initialized:
            logger.debug("Storage service already started")
            return

        logger.info(
            "Starting storage service",
            extra={"provider": self._settings.provider.value},
        )

        if self._backend is None:
            self._backend = create_storage_backend(self._settings, **self._backend_kwargs)
        await self._backend.startup()

        self._initialized = True
        logger.info(
            "Storage service started successfully",
            extra={"backend": self._backend.backend_name},
        )

    async def shutdown(self) -> None:
        """Release backend connections. Safe to call more than once."""
        if not self._initialized:
            logger.debug("Storage service not initialized, nothing to shutdown")
            return

        logger.info("Shutting down storage service")
        if self._backend is not None:
            await self._backend.shutdown()

        self._initialized = False
        logger.info("Storage service shutdown complete")

    async def __aenter__(self) -> StorageService:
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def health_check(self) -> bool:
        """Check storage service health.

        Returns:
            True if healthy, False otherwise
        """
        if not self.is_ready or self._backend is None:
            return False
        return await self._backend.health_check()

    def _ensure_ready(self) -> StorageBackend:
        """Ensure the service is ready and return the backend.

        Raises:
            StorageNotConfiguredError: If service is not ready
        """
        if not self.is_ready or self._backend is None:
            raise StorageNotConfiguredError(
                message="Storage service is not initialized. Call startup() first.",
                metadata={"provider": self._settings.provider.value},
            )
        return self._backend

    # ========== Upload / Delete ==========

    async def upload_file(
        self,
        request: UploadRequest,
        validation: FileValidationOptions | None = None,
    ) -> UploadResult:
        """Upload one file from a path, stream or buffer.

        Args:
            request: Content source, identity and metadata
            validation: Size, type and safety rules checked before any backend call

        Returns:
            Upload result reflecting the stored record

        Raises:
            StorageProtocolError: If not exactly one content source is given,
                or a stream has no declared size
            StorageValidationError: If the file fails ``validation``
            StorageUploadError: If any step after descriptor creation fails
        """
        backend = self._ensure_ready()

        async with track_storage_operation(
            "upload",
            key=request.key or request.external_id,
            backend=backend.backend_name,
            size_bytes=request.size,
            content_type=request.content_type,
        ) as ctx:
            if validation is not None:
                prepared = await prepare_upload(request, self._settings.key_namespace)
                require_valid_file(prepared.filename, prepared.size, prepared.content_type, validation)
            result = await backend.upload_file(request)
            ctx["result_size"] = result.size
            return result

    async def delete_file(self, key: str) -> None:
        """Delete a file by key.

        Raises:
            StorageFileNotFoundError: If the key does not exist
        """
        backend = self._ensure_ready()
        async with track_storage_operation("delete", key=key, backend=backend.backend_name):
            await backend.delete_file(key)

    async def delete_file_by_external_id(self, external_id: str) -> None:
        backend = self._ensure_ready()
        async with track_storage_operation(
            "delete", key=external_id, backend=backend.backend_name, metadata={"by": "external_id"}
        ):
            await backend.delete_file_by_external_id(external_id)

    # ========== URLs ==========

    async def get_file_url(
        self,
        key: str,
        ttl: int | None = None,
        disposition: str | ContentDisposition | None = None,
    ) -> str:
        """Return a time-limited download URL.

        Args:
            key: Storage key
            ttl: Seconds the URL stays valid (backends deciding expiry themselves ignore it)
            disposition: "inline" or "attachment"; anything else means attachment

        Raises:
            StorageFileNotFoundError: If the key does not exist
        """
        backend = self._ensure_ready()
        resolved = normalize_disposition(disposition)
        async with track_storage_operation(
            "get_url", key=key, backend=backend.backend_name, metadata={"disposition": resolved.value}
        ):
            return await backend.get_file_url(key, ttl, resolved)

    async def get_file_url_by_external_id(
        self,
        external_id: str,
        ttl: int | None = None,
        disposition: str | ContentDisposition | None = None,
    ) -> str:
        backend = self._ensure_ready()
        resolved = normalize_disposition(disposition)
        async with track_storage_operation(
            "get_url",
            key=external_id,
            backend=backend.backend_name,
            metadata={"disposition": resolved.value, "by": "external_id"},
        ):
            return await backend.get_file_url_by_external_id(external_id, ttl, resolved)

    # ========== Lookup ==========

    async def file_exists(self, key: str) -> bool:
        """True only for a fully uploaded file."""
        backend = self._ensure_ready()
        async with track_storage_operation("exists", key=key, backend=backend.backend_name):
            record = await backend.find_file(key)
            return record is not None and record.upload_status == UploadStatus.COMPLETED

    async def file_exists_by_external_id(self, external_id: str) -> bool:
        backend = self._ensure_ready()
        async with track_storage_operation(
            "exists", key=external_id, backend=backend.backend_name, metadata={"by": "external_id"}
        ):
            return await backend.find_file_by_external_id(external_id) is not None

    async def find_file(self, key: str) -> FileRecord | None:
        backend = self._ensure_ready()
        async with track_storage_operation("find", key=key, backend=backend.backend_name):
            return await backend.find_file(key)

    async def find_file_by_external_id(self, external_id: str) -> FileRecord | None:
        """Return the record for an external id, or None."""
        backend = self._ensure_ready()
        async with track_storage_operation(
            "find", key=external_id, backend=backend.backend_name, metadata={"by": "external_id"}
        ):
            return await backend.find_file_by_external_id(external_id)

    # ========== Listing and Search ==========

    async def list_files(self, options: ListFilesOptions | None = None) -> ListFilesResult:
        """List files with filters, sorting and offset pagination.

        Raises:
            StorageValidationError: If offset is negative or limit is below 1
        """
        backend = self._ensure_ready()
        options = options or ListFilesOptions()
        async with track_storage_operation(
            "list", key=options.prefix, backend=backend.backend_name
        ) as ctx:
            result = await backend.list_files(options)
            ctx["total_count"] = result.total_count
            ctx["truncated"] = result.truncated
            return result

    async def search_files(self, options: SearchFilesOptions | str) -> SearchFilesResult:
        """Free-text search over external id, filename, metadata, content type and key."""
        backend = self._ensure_ready()
        if isinstance(options, str):
            options = SearchFilesOptions(query=options)
        async with track_storage_operation(
            "search", backend=backend.backend_name, metadata={"query": options.query}
        ) as ctx:
            result = await backend.search_files(options)
            ctx["total_count"] = result.total_count
            ctx["truncated"] = result.truncated
            return result

    # ========== Streaming ==========

    async def get_file_stream(self, key: str, options: StreamOptions | None = None) -> FileStream:
        """Open a (ranged) stream. The caller must release it.

        Raises:
            StorageFileNotFoundError: If the key does not exist
            StorageTimeoutError: If opening exceeds ``options.timeout``
            StorageCancelledError: If ``options.cancel_event`` fires
        """
        backend = self._ensure_ready()
        options = options or StreamOptions()
        async with track_storage_operation(
            "stream",
            key=key,
            backend=backend.backend_name,
            metadata={"start": options.start, "end": options.end} if options.is_range else None,
        ) as ctx:
            stream = await backend.open_stream(key, options)
            ctx["status_code"] = stream.status_code
            return stream

    async def get_file_stream_by_external_id(
        self,
        external_id: str,
        options: StreamOptions | None = None,
    ) -> FileStream:
        backend = self._ensure_ready()
        options = options or StreamOptions()
        async with track_storage_operation(
            "stream", key=external_id, backend=backend.backend_name, metadata={"by": "external_id"}
        ) as ctx:
            stream = await backend.open_stream_by_external_id(external_id, options)
            ctx["status_code"] = stream.status_code
            return stream

    # ========== Visibility ==========

    async def set_file_visibility(
        self,
        key: str,
        visibility: Visibility | str,
    ) -> VisibilityResult:
        """Request a visibility change. Never raises for storage failures.

        The result reports requested and actual visibility separately; a
        backend that cannot honor the request still succeeds with
        ``actual_visibility`` telling the truth.
        """
        backend = self._ensure_ready()
        requested = Visibility(visibility)
        async with track_storage_operation(
            "set_visibility", key=key, backend=backend.backend_name, metadata={"visibility": requested.value}
        ) as ctx:
            result = await guarded_set_visibility(backend.set_visibility(key, requested), requested, key)
            ctx["success"] = result.success
            ctx["actual_visibility"] = result.actual_visibility.value
            return result

    async def set_file_visibility_by_external_id(
        self,
        external_id: str,
        visibility: Visibility | str,
    ) -> VisibilityResult:
        backend = self._ensure_ready()
        requested = Visibility(visibility)
        async with track_storage_operation(
            "set_visibility",
            key=external_id,
            backend=backend.backend_name,
            metadata={"visibility": requested.value, "by": "external_id"},
        ) as ctx:
            result = await guarded_set_visibility(
                backend.set_visibility_by_external_id(external_id, requested),
                requested,
                external_id,
            )
            ctx["success"] = result.success
            ctx["actual_visibility"] = result.actual_visibility.value
            return result

    async def get_file_visibility(self, key: str) -> VisibilityStatus:
        """Report current visibility and which changes the backend supports.

        Raises:
            StorageFileNotFoundError: If the key does not exist
        """
        backend = self._ensure_ready()
        async with track_storage_operation("get_visibility", key=key, backend=backend.backend_name):
            return await backend.get_visibility(key)

    async def get_file_visibility_by_external_id(self, external_id: str) -> VisibilityStatus:
        backend = self._ensure_ready()
        async with track_storage_operation(
            "get_visibility", key=external_id, backend=backend.backend_name, metadata={"by": "external_id"}
        ):
            return await backend.get_visibility_by_external_id(external_id)
