"""Pre-upload file validation.

Checks size bounds, allowed MIME types and extensions, and blocks files that
look dangerous (executables, macro documents, archives, double extensions,
server-side scripts, hidden files). Validation runs on the resolved
filename, size and content type before any backend call.

Example:
    result = validate_file("photo.png", 2048, "image/png", COMMON_VALIDATION_OPTIONS["images"])
    if not result.valid:
        print(result.error)
"""

from __future__ import annotations

from dataclasses import dataclass
import re

from storage_gateway.infra.storage.exceptions import StorageValidationError
from storage_gateway.infra.storage.path import filename_from_key, get_file_extension

DEFAULT_MAX_SIZE = 10 * 1024 * 1024

DANGEROUS_EXTENSIONS = frozenset(
    {
        # executables
        "exe", "bat", "cmd", "com", "pif", "scr", "vbs", "vbe", "ws", "wsf", "wsh",
        # scripts and installers
        "js", "jse", "jar", "msi", "dll", "scf", "lnk", "inf", "reg",
        # macro-enabled documents
        "docm", "xlsm", "pptm", "potm", "ppam", "xlam", "xltm",
        # archives
        "zip", "rar", "7z", "tar", "gz", "bz2",
    }
)  # fmt: skip

DANGEROUS_MIME_TYPES = frozenset(
    {
        "application/x-msdownload",
        "application/x-executable",
        "application/x-dosexec",
        "application/x-winexe",
        "application/octet-stream",
    }
)

_SUSPICIOUS_PATTERNS = (
    re.compile(r"^\."),
    re.compile(r"\.(php|asp|aspx|jsp|cgi|pl)$", re.IGNORECASE),
    re.compile(r"\.(htaccess|htpasswd)$", re.IGNORECASE),
)

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


@dataclass(frozen=True)
class FileValidationOptions:
    """Rules applied by ``validate_file``.

    Empty ``allowed_types``/``allowed_extensions`` allow everything.
    Extensions are compared without the leading dot, case-insensitively.
    """

    max_size: int = DEFAULT_MAX_SIZE
    min_size: int = 0
    allowed_types: tuple[str, ...] = ()
    allowed_extensions: tuple[str, ...] = ()
    block_dangerous_files: bool = True


@dataclass(frozen=True)
class FileValidationResult:
    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class SecurityCheck:
    safe: bool
    reason: str | None = None


def format_bytes(size: int, decimals: int = 2) -> str:
    """Human-readable size with binary units, e.g. ``1.5 MB``."""
    if size <= 0:
        return "0 Bytes"
    exponent = 0
    value = float(size)
    while value >= 1024 and exponent < len(_SIZE_UNITS) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, max(decimals, 0)):g} {_SIZE_UNITS[exponent]}"


def _extension(filename: str) -> str:
    ext = get_file_extension(filename)
    return ext[1:] if ext else ""


def check_file_security_risk(filename: str, mime_type: str) -> SecurityCheck:
    """Decide whether a filename and MIME type look dangerous."""
    name = filename_from_key(filename)
    extension = _extension(name)

    if extension in DANGEROUS_EXTENSIONS:
        return SecurityCheck(False, f'File extension ".{extension}" is potentially dangerous and not allowed')

    if mime_type in DANGEROUS_MIME_TYPES:
        return SecurityCheck(False, f'MIME type "{mime_type}" is potentially dangerous and not allowed')

    parts = name.split(".")
    if len(parts) > 2 and parts[-2].lower() in DANGEROUS_EXTENSIONS:
        return SecurityCheck(False, "Files with double extensions are not allowed for security reasons")

    if any(pattern.search(name) for pattern in _SUSPICIOUS_PATTERNS):
        return SecurityCheck(False, "Filename matches a suspicious pattern and is not allowed")

    return SecurityCheck(True)


def validate_file(
    filename: str,
    size: int,
    content_type: str,
    options: FileValidationOptions | None = None,
) -> FileValidationResult:
    """Validate one file against ``options``; the first failing rule wins.

    Order: minimum size, maximum size, MIME type, extension, security check.
    """
    options = options or FileValidationOptions()

    if size < options.min_size:
        return FileValidationResult(
            False,
            f"File size ({format_bytes(size)}) is below minimum allowed size ({format_bytes(options.min_size)})",
        )
    if size > options.max_size:
        return FileValidationResult(
            False,
            f"File size ({format_bytes(size)}) exceeds maximum allowed size ({format_bytes(options.max_size)})",
        )

    if options.allowed_types and content_type not in options.allowed_types:
        return FileValidationResult(
            False,
            f'File type "{content_type}" is not allowed. Allowed types: {", ".join(options.allowed_types)}',
        )

    if options.allowed_extensions:
        allowed = [ext.lstrip(".").lower() for ext in options.allowed_extensions]
        extension = _extension(filename)
        if extension not in allowed:
            return FileValidationResult(
                False,
                f'File extension "{extension}" is not allowed. Allowed extensions: {", ".join(allowed)}',
            )

    if options.block_dangerous_files:
        check = check_file_security_risk(filename, content_type)
        if not check.safe:
            return FileValidationResult(False, check.reason or "File type is considered dangerous")

    return FileValidationResult(True)


def require_valid_file(
    filename: str,
    size: int,
    content_type: str,
    options: FileValidationOptions | None = None,
) -> None:
    """Raise when ``validate_file`` rejects the file.

    Raises:
        StorageValidationError: With the rejection reason
    """
    result = validate_file(filename, size, content_type, options)
    if not result.valid:
        raise StorageValidationError(
            result.error or "File failed validation",
            metadata={"filename": filename, "size": size, "content_type": content_type},
        )


COMMON_VALIDATION_OPTIONS: dict[str, FileValidationOptions] = {
    "images": FileValidationOptions(
        max_size=5 * 1024 * 1024,
        allowed_types=("image/jpeg", "image/png", "image/gif", "image/webp"),
        allowed_extensions=("jpg", "jpeg", "png", "gif", "webp"),
    ),
    "documents": FileValidationOptions(
        max_size=10 * 1024 * 1024,
        allowed_types=(
            "application/pdf",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "text/plain",
        ),
        allowed_extensions=("pdf", "doc", "docx", "xls", "xlsx", "txt"),
    ),
    "videos": FileValidationOptions(
        max_size=100 * 1024 * 1024,
        allowed_types=("video/mp4", "video/mpeg", "video/quicktime", "video/x-msvideo"),
        allowed_extensions=("mp4", "mpeg", "mpg", "mov", "avi"),
    ),
    "audio": FileValidationOptions(
        max_size=20 * 1024 * 1024,
        allowed_types=("audio/mpeg", "audio/wav", "audio/ogg", "audio/mp4"),
        allowed_extensions=("mp3", "wav", "ogg", "m4a"),
    ),
    "strict": FileValidationOptions(
        max_size=2 * 1024 * 1024,
        allowed_types=("image/jpeg", "image/png", "application/pdf", "text/plain"),
        allowed_extensions=("jpg", "jpeg", "png", "pdf", "txt"),
    ),
    # Still blocks dangerous files
    "permissive": FileValidationOptions(max_size=50 * 1024 * 1024),
}
