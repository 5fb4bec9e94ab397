"""Storage backends package.

Provides the protocol every backend implements and the factory that
selects one from settings.
"""

from storage_gateway.core.settings.storage import StorageProviderType

from .factory import create_storage_backend
from .protocol import (
    FileRecord,
    StorageBackend,
    UploadRequest,
    UploadResult,
)

__all__ = [
    "FileRecord",
    "StorageBackend",
    "StorageProviderType",
    "UploadRequest",
    "UploadResult",
    "create_storage_backend",
]
