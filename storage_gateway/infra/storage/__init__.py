"""Multi-backend object storage.

This module provides a storage layer with:
- StorageService, a caller-owned facade with full observability
- Backends for the descriptor storage API, S3-compatible services, Azure
  Blob Storage and the local filesystem, selected by ``STORAGE_PROVIDER``
- Range-aware streaming with cancellation and timeouts
- Client-side filtering, search, sorting and pagination over listings
- Requested vs. actual visibility reporting
- Pre-upload validation and cross-storage sync
- Prometheus metrics and OpenTelemetry instrumentation

Quick Start:
    from storage_gateway.infra.storage import StorageService, UploadRequest

    async with StorageService() as storage:
        result = await storage.upload_file(
            UploadRequest(external_id="report-7", file_path="report.pdf")
        )
        async with await storage.get_file_stream(result.key) as stream:
            data = await stream.read()
"""

from __future__ import annotations

from storage_gateway.core.settings.storage import StorageProviderType, StorageSettings

from .backends.protocol import (
    ContentDisposition,
    FileRecord,
    ListFilesOptions,
    ListFilesResult,
    SearchField,
    SearchFilesOptions,
    SearchFilesResult,
    SortField,
    SortOrder,
    StorageBackend,
    StreamOptions,
    UploadRequest,
    UploadResult,
    UploadStatus,
    Visibility,
    VisibilityResult,
    VisibilityStatus,
)
from .exceptions import (
    StorageCancelledError,
    StorageError,
    StorageFileNotFoundError,
    StorageNotConfiguredError,
    StoragePermissionError,
    StorageProtocolError,
    StorageTimeoutError,
    StorageTransportError,
    StorageUploadError,
    StorageValidationError,
)
from .operations.download import FileStream, StreamPool, resume_download
from .operations.sync import SyncOptions, SyncResult, sync_storage
from .operations.validation import FileValidationOptions, validate_file
from .service import StorageService

__all__ = [
    "ContentDisposition",
    "FileRecord",
    "FileStream",
    "FileValidationOptions",
    "ListFilesOptions",
    "ListFilesResult",
    "SearchField",
    "SearchFilesOptions",
    "SearchFilesResult",
    "SortField",
    "SortOrder",
    "StorageBackend",
    "StorageCancelledError",
    "StorageError",
    "StorageFileNotFoundError",
    "StorageNotConfiguredError",
    "StoragePermissionError",
    "StorageProtocolError",
    "StorageProviderType",
    "StorageService",
    "StorageSettings",
    "StorageTimeoutError",
    "StorageTransportError",
    "StorageUploadError",
    "StorageValidationError",
    "StreamOptions",
    "StreamPool",
    "SyncOptions",
    "SyncResult",
    "UploadRequest",
    "UploadResult",
    "UploadStatus",
    "Visibility",
    "VisibilityResult",
    "VisibilityStatus",
    "resume_download",
    "sync_storage",
    "validate_file",
]
