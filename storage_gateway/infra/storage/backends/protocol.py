"""Storage backend protocol and normalized data structures.

This module defines:
- The canonical file record shared by all backends
- Request/option/result types for upload, listing, search, streaming and visibility
- The Protocol interface every storage backend implements
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol

if TYPE_CHECKING:
    from collections.abc import AsyncIterable
    from datetime import datetime

    from storage_gateway.infra.storage.operations.download import FileStream

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000

# ============================================================================
# Enumerations
# ============================================================================


class Visibility(StrEnum):
    """Accessibility level of a stored file."""

    PUBLIC = "public"
    PRIVATE = "private"
    TEMPORARY_PUBLIC = "temporary-public"


class UploadStatus(StrEnum):
    """Lifecycle state of a file record.

    pending -> uploading -> completed, or failed from any step.
    """

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class ContentDisposition(StrEnum):
    """Content-Disposition requested for signed download URLs."""

    INLINE = "inline"
    ATTACHMENT = "attachment"


class SortField(StrEnum):
    """Fields listing and search results can be sorted by."""

    KEY = "key"
    EXTERNAL_ID = "external_id"
    FILENAME = "filename"
    SIZE = "size"
    LAST_MODIFIED = "lastModified"
    CONTENT_TYPE = "contentType"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class SearchField(StrEnum):
    """Record fields a free-text search can be scoped to."""

    EXTERNAL_ID = "external_id"
    FILENAME = "filename"
    METADATA = "metadata"
    CONTENT_TYPE = "contentType"
    KEY = "key"


DEFAULT_SEARCH_FIELDS = (SearchField.EXTERNAL_ID, SearchField.FILENAME, SearchField.METADATA)

# ============================================================================
# Normalized Data Structures
# ============================================================================


@dataclass(frozen=True)
class FileRecord:
    """Canonical representation of a stored file across all backends.

    Attributes:
        key: Storage key/path
        content_type: MIME type
        file_id: Server-assigned identity (descriptor backend only)
        external_id: Caller-assigned identifier, unique per project scope
        expected_size: Size declared when the upload was started
        actual_size: Size confirmed by the backend; trusted only once completed
        upload_status: Lifecycle state
        metadata: Caller and provider supplied string metadata, order preserved
        visibility: Requested visibility preference
        created_at: Creation timestamp
        updated_at: Last update timestamp
        uploaded_at: Commit timestamp (None until completed)
        last_modified: Best available modification timestamp
        url: Canonical access URL of the backend, if it has one
        etag: Entity tag for version identification
    """

    key: str
    content_type: str
    file_id: str | None = None
    external_id: str | None = None
    expected_size: int | None = None
    actual_size: int | None = None
    upload_status: UploadStatus = UploadStatus.COMPLETED
    metadata: dict[str, str] = field(default_factory=dict)
    visibility: Visibility | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    uploaded_at: datetime | None = None
    last_modified: datetime | None = None
    url: str | None = None
    etag: str | None = None

    @property
    def size(self) -> int:
        """Confirmed size, falling back to the declared size."""
        if self.actual_size is not None:
            return self.actual_size
        return self.expected_size or 0

    @property
    def filename(self) -> str:
        """Last path segment of the key."""
        return self.key.rstrip("/").rsplit("/", 1)[-1]

    @property
    def identity(self) -> str:
        """Stable identity: server file id when present, otherwise the key."""
        return self.file_id or self.key

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        return {
            "key": self.key,
            "file_id": self.file_id,
            "external_id": self.external_id,
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
            "expected_size": self.expected_size,
            "actual_size": self.actual_size,
            "upload_status": self.upload_status.value,
            "metadata": dict(self.metadata),
            "visibility": self.visibility.value if self.visibility else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "url": self.url,
            "etag": self.etag,
        }


@dataclass(frozen=True)
class UploadRequest:
    """A single upload, with exactly one content source.

    Attributes:
        external_id: Caller-assigned identifier
        file_path: Local file to upload
        stream: Binary file object or async byte iterator; requires ``size``
        buffer: In-memory content
        size: Declared size in bytes (mandatory for streams)
        filename: Original filename; inferred from path or key when omitted
        key: Storage key; synthesized from external id when omitted
        content_type: MIME type; inferred from the filename when omitted
        metadata: Caller metadata
        visibility: Requested visibility
    """

    external_id: str
    file_path: str | Path | None = None
    stream: BinaryIO | AsyncIterable[bytes] | None = None
    buffer: bytes | None = None
    size: int | None = None
    filename: str | None = None
    key: str | None = None
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    visibility: Visibility = Visibility.PRIVATE


@dataclass(frozen=True)
class UploadResult:
    """Result of an upload, reflecting server-confirmed facts.

    Attributes:
        external_id: Caller-assigned identifier
        key: Resolved storage key
        url: Canonical access URL of the backend
        size: Confirmed size in bytes
        content_type: Confirmed MIME type
        file_id: Server-assigned identity (descriptor backend only)
        upload_status: Final lifecycle state
        visibility: Requested visibility
        actual_visibility: Visibility the backend enforces
        public_url: Public URL when the file is actually public
        metadata: Stored metadata
        etag: Entity tag when the backend reports one
    """

    external_id: str
    key: str
    url: str | None
    size: int
    content_type: str
    file_id: str | None = None
    upload_status: UploadStatus = UploadStatus.COMPLETED
    visibility: Visibility = Visibility.PRIVATE
    actual_visibility: Visibility = Visibility.PRIVATE
    public_url: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    etag: str | None = None


@dataclass(frozen=True)
class ListFilesOptions:
    """Filters, sort and pagination for listing.

    Patterns are case-insensitive globs supporting ``*`` and ``?``.
    """

    prefix: str | None = None
    key_pattern: str | None = None
    external_id_prefix: str | None = None
    external_id_pattern: str | None = None
    external_ids: tuple[str, ...] | None = None
    content_type: str | None = None
    content_type_prefix: str | None = None
    filename: str | None = None
    filename_pattern: str | None = None
    min_size: int | None = None
    max_size: int | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    modified_after: datetime | None = None
    modified_before: datetime | None = None
    metadata: dict[str, str] | None = None
    has_metadata: tuple[str, ...] | None = None
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0
    sort_by: SortField = SortField.KEY
    sort_order: SortOrder = SortOrder.ASC


@dataclass(frozen=True)
class SearchFilesOptions:
    """Free-text search plus the listing filters that apply to search."""

    query: str = ""
    search_fields: tuple[SearchField, ...] = DEFAULT_SEARCH_FIELDS
    case_sensitive: bool = False
    exact_match: bool = False
    external_id_prefix: str | None = None
    external_id_pattern: str | None = None
    external_ids: tuple[str, ...] | None = None
    content_type: str | None = None
    content_type_prefix: str | None = None
    filename: str | None = None
    filename_pattern: str | None = None
    min_size: int | None = None
    max_size: int | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    modified_after: datetime | None = None
    modified_before: datetime | None = None
    metadata: dict[str, str] | None = None
    has_metadata: tuple[str, ...] | None = None
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0
    sort_by: SortField = SortField.KEY
    sort_order: SortOrder = SortOrder.ASC


@dataclass(frozen=True)
class ListFilesResult:
    """One page of records.

    Attributes:
        files: Records on this page
        total_count: Records matching after filtering
        has_more: Whether records exist past this page
        next_offset: Offset of the next page, only set when ``has_more``
        truncated: The backend superset hit its fetch bound
        search_time_ms: Time spent producing the page
    """

    files: list[FileRecord]
    total_count: int
    has_more: bool
    next_offset: int | None = None
    truncated: bool = False
    search_time_ms: float | None = None


@dataclass(frozen=True)
class SearchFilesResult(ListFilesResult):
    """Search page with the query that produced it."""

    query: str = ""
    search_fields: tuple[SearchField, ...] = DEFAULT_SEARCH_FIELDS


@dataclass(frozen=True)
class StreamOptions:
    """Byte range, timeout and cancellation for opening a file stream.

    Attributes:
        start: First byte offset (inclusive)
        end: Last byte offset (inclusive)
        timeout: Seconds allowed for the whole stream, including reads
        cancel_event: Setting this event aborts the stream
        chunk_size: Read size for iteration
        disposition: Content-Disposition requested when resolving a signed URL
    """

    start: int | None = None
    end: int | None = None
    timeout: float | None = None
    cancel_event: asyncio.Event | None = None
    chunk_size: int = 64 * 1024
    disposition: ContentDisposition = ContentDisposition.ATTACHMENT

    @property
    def is_range(self) -> bool:
        return self.start is not None or self.end is not None


@dataclass(frozen=True)
class ContentRange:
    """Parsed ``Content-Range: bytes start-end/total`` (total None when ``*``)."""

    start: int
    end: int
    total: int | None

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class VisibilityResult:
    """Outcome of a visibility change.

    ``requested_visibility`` is what the caller asked for;
    ``actual_visibility`` is what the backend enforces afterwards.
    """

    success: bool
    requested_visibility: Visibility
    actual_visibility: Visibility
    message: str
    public_url: str | None = None
    public_url_expires_at: datetime | None = None
    provider_specific: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VisibilityStatus:
    """Current visibility of a file and what the backend can change."""

    visibility: Visibility
    can_make_public: bool
    can_make_private: bool
    supports_temporary_access: bool
    message: str | None = None
    public_url: str | None = None
    public_url_expires_at: datetime | None = None


# ============================================================================
# Storage Backend Protocol
# ============================================================================


class StorageBackend(Protocol):
    """Protocol interface for storage backends.

    Every backend (descriptor API, S3-compatible, local filesystem)
    implements this protocol. Uses structural typing (Protocol) rather than
    inheritance.

    Lookups by key or external id that find nothing return ``None``.
    Operations that need an existing file raise ``StorageFileNotFoundError``.
    """

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def backend_name(self) -> str:
        """Name of the backend (e.g., 'descriptor', 's3', 'azure', 'local')."""
        ...

    @property
    def is_ready(self) -> bool:
        """Check if backend is initialized and ready for operations."""
        ...

    # ========================================================================
    # Lifecycle Management
    # ========================================================================

    async def startup(self) -> None:
        """Initialize backend (resolve credentials, create clients)."""
        ...

    async def shutdown(self) -> None:
        """Close clients and release connections."""
        ...

    async def health_check(self) -> bool:
        """Check backend connectivity.

        Returns:
            True if healthy, False otherwise
        """
        ...

    # ========================================================================
    # Upload / Delete
    # ========================================================================

    async def upload_file(self, request: UploadRequest) -> UploadResult:
        """Upload content described by a validated request.

        Raises:
            StorageProtocolError: If the request has zero or several sources
            StorageUploadError: If a step of the upload fails
        """
        ...

    async def delete_file(self, key: str) -> None:
        """Delete a file by key.

        Raises:
            StorageFileNotFoundError: If no file has this key
        """
        ...

    async def delete_file_by_external_id(self, external_id: str) -> None:
        """Delete a file by external id.

        Raises:
            StorageFileNotFoundError: If no file has this external id
        """
        ...

    # ========================================================================
    # Lookup
    # ========================================================================

    async def find_file(self, key: str) -> FileRecord | None:
        """Get the record stored under a key, or None."""
        ...

    async def find_file_by_external_id(self, external_id: str) -> FileRecord | None:
        """Get the record with an external id, or None."""
        ...

    # ========================================================================
    # URLs and Streams
    # ========================================================================

    async def get_file_url(
        self,
        key: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        """Get a time-limited download URL for a key."""
        ...

    async def get_file_url_by_external_id(
        self,
        external_id: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        """Get a time-limited download URL for an external id."""
        ...

    async def open_stream(self, key: str, options: StreamOptions) -> FileStream:
        """Open a (possibly ranged) byte stream. Caller must release it."""
        ...

    async def open_stream_by_external_id(
        self,
        external_id: str,
        options: StreamOptions,
    ) -> FileStream:
        """Open a (possibly ranged) byte stream by external id."""
        ...

    # ========================================================================
    # Listing and Search
    # ========================================================================

    async def list_files(self, options: ListFilesOptions) -> ListFilesResult:
        """List one page of records after filtering and sorting."""
        ...

    async def search_files(self, options: SearchFilesOptions) -> SearchFilesResult:
        """Search records by free text, then filter, sort and paginate."""
        ...

    # ========================================================================
    # Visibility
    # ========================================================================

    async def set_visibility(self, key: str, visibility: Visibility) -> VisibilityResult:
        """Request a visibility; never raises for backend-side failures."""
        ...

    async def set_visibility_by_external_id(
        self,
        external_id: str,
        visibility: Visibility,
    ) -> VisibilityResult:
        """Request a visibility by external id."""
        ...

    async def get_visibility(self, key: str) -> VisibilityStatus:
        """Report the visibility a file actually has."""
        ...

    async def get_visibility_by_external_id(self, external_id: str) -> VisibilityStatus:
        """Report the visibility of the file with an external id."""
        ...
