"""Key generation and content-type utilities for storage operations.

Key features:
- Static extension to MIME type table used when callers omit a content type
- Storage key synthesis from an external id and a millisecond timestamp
- Filename sanitization for keys built from user-supplied names
- Key validation that prevents directory traversal on filesystem backends

Example:
    ```python
    key = generate_storage_key("invoice-42", "invoice.pdf")
    # Returns: files/invoice-42-1732526400000.pdf

    infer_content_type("photo.JPG")
    # Returns: image/jpeg

    filename_from_key("files/2025/report.csv")
    # Returns: report.csv
    ```
"""

from __future__ import annotations

import re
import time

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Extension (lowercase, without dot) to MIME type
MIME_TYPES: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
    "txt": "text/plain",
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "json": "application/json",
    "xml": "application/xml",
    "zip": "application/zip",
    "mp4": "video/mp4",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}

MAX_KEY_LENGTH = 1024


def get_file_extension(filename: str) -> str | None:
    """Get the lowercase file extension including the dot.

    Args:
        filename: Filename or key to inspect.

    Returns:
        Extension such as ".pdf", or None if there is none. Dotfiles such as
        ".gitignore" have no extension.

    Example:
        ```python
        get_file_extension("archive.tar.gz")
        # Returns: ".gz"

        get_file_extension("README")
        # Returns: None
        ```
    """
    name = filename_from_key(filename)
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or not ext:
        return None
    return f".{ext.lower()}"


def infer_content_type(filename: str | None) -> str:
    """Infer a MIME type from the filename extension.

    Args:
        filename: Filename or key. None yields the default.

    Returns:
        MIME type from the static table, or ``application/octet-stream``.
    """
    if not filename:
        return DEFAULT_CONTENT_TYPE
    ext = get_file_extension(filename)
    if ext is None:
        return DEFAULT_CONTENT_TYPE
    return MIME_TYPES.get(ext[1:], DEFAULT_CONTENT_TYPE)


def filename_from_key(key: str) -> str:
    """Return the last path segment of a storage key."""
    return key.rstrip("/").rsplit("/", 1)[-1]


def sanitize_filename(filename: str) -> str:
    """Sanitize a filename for use inside a storage key.

    Replaces anything other than word characters and dashes in the name part
    with underscores, collapses repeats and keeps a sanitized extension.

    Args:
        filename: Original filename to sanitize.

    Returns:
        Sanitized filename safe for storage.

    Example:
        ```python
        sanitize_filename("my file (1).pdf")
        # Returns: "my_file_1.pdf"

        sanitize_filename("...")
        # Returns: "unnamed_file"
        ```
    """
    parts = filename.rsplit(".", 1)
    name_part = parts[0]
    ext_part = f".{parts[1]}" if len(parts) == 2 and parts[1] else ""

    safe_name = re.sub(r"[^\w\-]", "_", name_part)
    safe_name = re.sub(r"_+", "_", safe_name).strip("_")

    if ext_part:
        safe_ext = re.sub(r"[^\w]", "", ext_part[1:])
        ext_part = f".{safe_ext}" if safe_ext else ""

    if safe_name:
        return f"{safe_name}{ext_part}"
    if ext_part:
        return f"unnamed_file{ext_part}"
    return "unnamed_file"


def generate_storage_key(
    external_id: str,
    filename: str | None = None,
    namespace: str = "files",
    timestamp_ms: int | None = None,
) -> str:
    """Synthesize a storage key as ``<namespace>/<external_id>-<timestamp><.ext>``.

    Args:
        external_id: Caller-assigned identifier of the file.
        filename: Original filename; only its extension is used.
        namespace: Leading key segment.
        timestamp_ms: Millisecond timestamp; defaults to now.

    Returns:
        Storage key.

    Example:
        ```python
        generate_storage_key("avatar-7", "me.png", timestamp_ms=1700000000000)
        # Returns: files/avatar-7-1700000000000.png
        ```
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    ext = get_file_extension(filename) if filename else None
    safe_id = re.sub(r"[^\w\-.]", "_", external_id).strip("._") or "file"
    return f"{namespace.strip('/')}/{safe_id}-{timestamp_ms}{ext or ''}"


def validate_key(key: str) -> None:
    """Validate a storage key before it is mapped onto a filesystem or bucket.

    Validation checks:
    - Reject empty keys
    - Reject ".." segments (directory traversal)
    - Reject keys starting or ending with "/"
    - Reject null bytes and control characters
    - Enforce maximum length (1024 characters)

    Args:
        key: Key to validate.

    Raises:
        ValueError: If the key fails any check.
    """
    if not key or not key.strip():
        msg = "Key cannot be empty"
        raise ValueError(msg)

    if any(segment == ".." for segment in key.replace("\\", "/").split("/")):
        msg = "Key contains directory traversal (..) segment"
        raise ValueError(msg)

    if key.startswith("/"):
        msg = "Key cannot start with /"
        raise ValueError(msg)

    if key.endswith("/"):
        msg = "Key cannot end with /"
        raise ValueError(msg)

    if any(ord(c) < 32 for c in key):
        msg = "Key contains null bytes or control characters"
        raise ValueError(msg)

    if len(key) > MAX_KEY_LENGTH:
        msg = f"Key exceeds maximum length of {MAX_KEY_LENGTH} characters (got {len(key)})"
        raise ValueError(msg)
