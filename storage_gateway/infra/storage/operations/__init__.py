"""Storage operation modules.

Backend-independent algorithms composed by every backend: upload
preparation and the descriptor upload protocol, signed URL resolution,
range streaming, client-side listing/search, visibility results, upload
validation and cross-storage sync.
"""

from .download import (
    CancellationScope,
    FileStream,
    StreamPool,
    build_range_header,
    open_range_stream,
    parse_content_range,
    resume_download,
)
from .listing import (
    SEARCH_FETCH_LIMIT,
    apply_filters,
    glob_match,
    list_records,
    match_query,
    paginate,
    search_records,
    sort_records,
)
from .presigned import PresignedDownloadUrl, SignedUrlResolver, normalize_disposition
from .upload import (
    PreparedUpload,
    UploadDescriptor,
    UploadOrchestrator,
    prepare_upload,
    validate_upload_request,
)
from .sync import (
    ConflictResolution,
    SyncDirection,
    SyncFilter,
    SyncOptions,
    SyncResult,
    get_sync_status,
    sync_storage,
    verify_synced_file,
)
from .validation import (
    COMMON_VALIDATION_OPTIONS,
    FileValidationOptions,
    FileValidationResult,
    check_file_security_risk,
    require_valid_file,
    validate_file,
)
from .visibility import (
    acl_grants_public,
    build_public_url,
    descriptor_visibility_result,
    descriptor_visibility_status,
    guarded_set_visibility,
    visibility_failure,
)

__all__ = [
    "COMMON_VALIDATION_OPTIONS",
    "SEARCH_FETCH_LIMIT",
    # Download operations
    "CancellationScope",
    # Sync operations
    "ConflictResolution",
    "FileStream",
    # Validation operations
    "FileValidationOptions",
    "FileValidationResult",
    # Upload operations
    "PreparedUpload",
    # Presigned URL operations
    "PresignedDownloadUrl",
    "SignedUrlResolver",
    "StreamPool",
    "SyncDirection",
    "SyncFilter",
    "SyncOptions",
    "SyncResult",
    "UploadDescriptor",
    "UploadOrchestrator",
    "acl_grants_public",
    # Listing operations
    "apply_filters",
    "build_public_url",
    "build_range_header",
    "check_file_security_risk",
    "descriptor_visibility_result",
    "descriptor_visibility_status",
    "get_sync_status",
    "glob_match",
    # Visibility operations
    "guarded_set_visibility",
    "list_records",
    "match_query",
    "normalize_disposition",
    "open_range_stream",
    "paginate",
    "parse_content_range",
    "prepare_upload",
    "require_valid_file",
    "resume_download",
    "search_records",
    "sort_records",
    "sync_storage",
    "validate_file",
    "validate_upload_request",
    "verify_synced_file",
    "visibility_failure",
]
