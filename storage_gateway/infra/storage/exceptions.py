"""Storage-specific exceptions for all storage backends.

This module defines custom exceptions for storage operations, providing
structured error handling with HTTP-equivalent status codes and metadata
following RFC 7807 Problem Details.

The taxonomy separates failures callers need to react to differently:

- ``StorageNotConfiguredError``: missing credential, project scope or settings.
- ``StorageFileNotFoundError``: a key or external id resolved to nothing.
- ``StorageTransportError``: network failure or non-2xx response.
- ``StorageTimeoutError``: the operation ran out of time.
- ``StorageProtocolError``: the caller broke the API contract.

Example:
    ```python
    from storage_gateway.infra.storage.exceptions import (
        StorageUploadError,
        map_http_error,
    )

    try:
        response = await client.post("/files", json=payload)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise map_http_error(e, operation="create_descriptor", target=filename) from e
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestTimeoutError,
    ServiceResponseTimeoutError,
)
from botocore.exceptions import BotoCoreError, ConnectTimeoutError, ReadTimeoutError
import httpx

from storage_gateway.core.exceptions import AppException

if TYPE_CHECKING:
    from botocore.exceptions import ClientError

# Response bodies are kept for diagnostics but never unbounded
_MAX_BODY_CHARS = 2048


class StorageError(AppException):
    """Base exception for all storage-related errors.

    Attributes:
        status_code: HTTP-equivalent status code for the error.
        detail: Human-readable error message.
        code: Error code identifier for programmatic error handling.
        type: Error type identifier (used in RFC 7807 problem details).
        extra: Additional context-specific information about the error (metadata).

    Example:
        ```python
        raise StorageError(
            message="Failed to reach storage backend",
            code="STORAGE_CONNECTION_ERROR",
            status_code=503,
            metadata={"backend": "descriptor", "api_url": api_url}
        )
        ```
    """

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 500,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Initialize storage error.

        Args:
            message: Human-readable error message.
            code: Error code for programmatic handling.
            status_code: HTTP-equivalent status code (default: 500).
            metadata: Additional error context.
        """
        self.code = code
        self.message = message
        super().__init__(
            status_code=status_code,
            detail=message,
            type=code.lower().replace("_", "-"),
            extra=metadata or {},
        )


class StorageNotConfiguredError(StorageError):
    """Raised when a credential, project scope or backend setting is missing.

    Fatal and surfaced immediately; never retried.
    """

    def __init__(
        self,
        message: str = "Storage is not configured",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_NOT_CONFIGURED",
            status_code=503,
            metadata=metadata,
        )


class StorageFileNotFoundError(StorageError):
    """Raised when a key or external id does not resolve to a stored file.

    Lookup helpers (``find_*``, ``*_exists``) treat this as a normal outcome
    and return ``None``/``False`` instead of raising it.

    Example:
        ```python
        raise StorageFileNotFoundError(
            f"File not found: {key}",
            metadata={"key": key}
        )
        ```
    """

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_NOT_FOUND",
            status_code=404,
            metadata=metadata,
        )


class StorageTransportError(StorageError):
    """Raised on network failure or a non-2xx response from a backend.

    Attributes:
        http_status: Status code returned by the remote side, if any.
        response_body: Response body returned by the remote side, if any.
    """

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Initialize transport error.

        Args:
            message: Human-readable error message.
            http_status: Remote HTTP status code when a response was received.
            response_body: Remote response body when available.
            metadata: Additional error context.
        """
        self.http_status = http_status
        self.response_body = response_body
        context = dict(metadata or {})
        if http_status is not None:
            context["http_status"] = http_status
        if response_body:
            context["response_body"] = response_body[:_MAX_BODY_CHARS]
        super().__init__(
            message=message,
            code="STORAGE_TRANSPORT_ERROR",
            status_code=502,
            metadata=context,
        )


class StorageUploadError(StorageError):
    """Raised when a step of the upload protocol fails.

    The message names the file and the underlying cause; ``extra`` records
    the step that failed and the server file id when one was assigned.

    Example:
        ```python
        raise StorageUploadError(
            "Failed to upload report.pdf: content transmission returned 403",
            metadata={"filename": "report.pdf", "file_id": "f_123", "step": "transmit"}
        )
        ```
    """

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_UPLOAD_ERROR",
            status_code=500,
            metadata=metadata,
        )


class StoragePermissionError(StorageError):
    """Raised when the backend denies access to a file or operation."""

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_PERMISSION_DENIED",
            status_code=403,
            metadata=metadata,
        )


class StorageValidationError(StorageError):
    """Raised when a parameter fails validation before a storage call."""

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_VALIDATION_ERROR",
            status_code=400,
            metadata=metadata,
        )


class StorageProtocolError(StorageError):
    """Raised when the caller or the backend violates the storage contract.

    Examples are an upload with zero or several content sources, a stream
    upload without a declared size, or a signed-URL response with no URL.
    Raised before any network call when the violation is on the caller side.
    """

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_PROTOCOL_ERROR",
            status_code=400,
            metadata=metadata,
        )


class StorageTimeoutError(StorageError):
    """Raised when a storage operation exceeds its time limit.

    Distinct from ``StorageTransportError`` so callers can tell a slow
    backend from a broken one.

    Example:
        ```python
        raise StorageTimeoutError(
            "Stream read timed out",
            metadata={"operation": "stream", "timeout_seconds": 30, "key": key}
        )
        ```
    """

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_TIMEOUT",
            status_code=504,
            metadata=metadata,
        )


class StorageCancelledError(StorageError):
    """Raised when a caller-supplied cancellation signal aborts an operation."""

    def __init__(
        self,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_CANCELLED",
            status_code=499,
            metadata=metadata,
        )


def map_http_error(
    error: httpx.HTTPError,
    operation: str,
    target: str | None = None,
) -> StorageError:
    """Map an httpx error to a domain-specific StorageError.

    Args:
        error: The httpx exception to map.
        operation: The storage operation being performed (e.g., "commit").
        target: Optional file id, key or filename being operated on.

    Returns:
        StorageError: Appropriate domain-specific storage exception.

    Error Mappings:
        - HTTPStatusError 404 -> StorageFileNotFoundError
        - HTTPStatusError 401, 403 -> StoragePermissionError
        - HTTPStatusError other -> StorageTransportError (with status and body)
        - DecodingError with a response -> StorageTransportError (with status and body)
        - TimeoutException -> StorageTimeoutError
        - Other HTTPError -> StorageTransportError (no status)
    """
    metadata: dict[str, Any] = {"operation": operation}
    if target:
        metadata["target"] = target
    subject = f" {target}" if target else ""

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        body = _safe_body(error.response)
        metadata["url"] = str(error.request.url).split("?", 1)[0]

        if status == 404:
            return StorageFileNotFoundError(
                f"{operation.capitalize()} failed: not found{subject}",
                metadata={**metadata, "http_status": status},
            )
        if status in {401, 403}:
            return StoragePermissionError(
                f"{operation.capitalize()} failed: access denied{subject} ({status})",
                metadata={**metadata, "http_status": status, "response_body": body},
            )
        return StorageTransportError(
            f"{operation.capitalize()} failed{subject}: HTTP {status}",
            http_status=status,
            response_body=body,
            metadata=metadata,
        )

    if isinstance(error, httpx.DecodingError) and getattr(error, "response", None) is not None:
        response = error.response
        metadata["url"] = str(error.request.url).split("?", 1)[0]
        return StorageTransportError(
            f"{operation.capitalize()} failed{subject}: backend returned an invalid response body",
            http_status=response.status_code,
            response_body=_safe_body(response),
            metadata=metadata,
        )

    if isinstance(error, httpx.TimeoutException):
        return StorageTimeoutError(
            f"{operation.capitalize()} timed out{subject}",
            metadata={**metadata, "error": str(error) or type(error).__name__},
        )

    return StorageTransportError(
        f"{operation.capitalize()} failed{subject}: backend unreachable ({type(error).__name__})",
        metadata={**metadata, "error": str(error)},
    )


def _safe_body(response: httpx.Response) -> str | None:
    """Return the response text if it has been read, else None."""
    try:
        return response.text[:_MAX_BODY_CHARS]
    except httpx.ResponseNotRead:
        return None


def map_boto_error(
    error: ClientError | BotoCoreError,
    operation: str,
    key: str | None = None,
) -> StorageError:
    """Map a botocore error to a domain-specific StorageError.

    Args:
        error: The botocore ClientError or BotoCoreError to map.
        operation: The storage operation being performed (e.g., "upload", "stream").
        key: Optional object key being operated on.

    Returns:
        StorageError: Appropriate domain-specific storage exception.

    Error Code Mappings:
        - NoSuchKey, NoSuchBucket, NotFound, 404 -> StorageFileNotFoundError
        - AccessDenied, ExpiredToken, InvalidAccessKeyId, ... -> StoragePermissionError
        - RequestTimeout, SlowDown -> StorageTimeoutError
        - InvalidRequest, InvalidArgument, InvalidRange, ... -> StorageValidationError
        - Others -> StorageTransportError carrying the HTTP status
        - BotoCoreError timeouts -> StorageTimeoutError
        - Other BotoCoreError (no response) -> StorageTransportError
    """
    if isinstance(error, BotoCoreError):
        return _map_botocore_failure(error, operation, key)

    error_code = error.response.get("Error", {}).get("Code", "Unknown")
    error_message = error.response.get("Error", {}).get("Message", str(error))
    http_status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    metadata: dict[str, Any] = {
        "operation": operation,
        "aws_error_code": error_code,
        "aws_error_message": error_message,
        "request_id": error.response.get("ResponseMetadata", {}).get("RequestId"),
    }
    if key:
        metadata["key"] = key

    if error_code in {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}:
        return StorageFileNotFoundError(
            message=f"{operation.capitalize()} failed: not found {key or ''}".rstrip(),
            metadata=metadata,
        )

    if error_code in {
        "AccessDenied",
        "ExpiredToken",
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "InvalidToken",
        "TokenRefreshRequired",
        "403",
    }:
        return StoragePermissionError(
            message=f"{operation.capitalize()} failed: access denied: {error_message}",
            metadata=metadata,
        )

    if error_code in {"RequestTimeout", "RequestTimeTooSkewed", "SlowDown"}:
        return StorageTimeoutError(
            message=f"{operation.capitalize()} timed out: {error_message}",
            metadata=metadata,
        )

    if error_code in {
        "InvalidRequest",
        "InvalidArgument",
        "InvalidRange",
        "MalformedXML",
        "InvalidBucketName",
        "KeyTooLongError",
        "MetadataTooLarge",
        "AccessControlListNotSupported",
    }:
        return StorageValidationError(
            message=f"{operation.capitalize()} failed: {error_message}",
            metadata=metadata,
        )

    return StorageTransportError(
        message=f"{operation.capitalize()} failed: {error_message}",
        http_status=http_status,
        metadata=metadata,
    )


def _map_botocore_failure(
    error: BotoCoreError,
    operation: str,
    key: str | None,
) -> StorageError:
    """Map a client-side botocore failure, where no response was received."""
    metadata: dict[str, Any] = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error": str(error),
    }
    if key:
        metadata["key"] = key
    subject = f" {key}" if key else ""

    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return StorageTimeoutError(
            message=f"{operation.capitalize()} timed out{subject}",
            metadata=metadata,
        )
    return StorageTransportError(
        message=f"{operation.capitalize()} failed{subject}: backend unreachable ({type(error).__name__})",
        metadata=metadata,
    )


_AZURE_VALIDATION_CODES = frozenset(
    {
        "InvalidRange",
        "InvalidBlobOrBlock",
        "InvalidMetadata",
        "InvalidHeaderValue",
        "InvalidResourceName",
        "OutOfRangeInput",
    }
)


def map_azure_error(
    error: AzureError,
    operation: str,
    key: str | None = None,
) -> StorageError:
    """Map an azure-core error raised by the blob SDK to a StorageError.

    Mapping:
        - ResourceNotFoundError / 404 -> StorageFileNotFoundError
        - ClientAuthenticationError / 401 / 403 -> StoragePermissionError
        - Request or response timeouts / OperationTimedOut -> StorageTimeoutError
        - 416 and invalid-input codes -> StorageValidationError
        - Other HttpResponseError -> StorageTransportError carrying the HTTP status
        - Errors without a response -> StorageTransportError (backend unreachable)
    """
    status = getattr(error, "status_code", None)
    error_code = getattr(error, "error_code", None)
    message = getattr(error, "message", None) or str(error)
    metadata: dict[str, Any] = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error": message,
    }
    if key:
        metadata["key"] = key
    if error_code:
        metadata["azure_error_code"] = str(error_code)
    if status is not None:
        metadata["http_status"] = status
    subject = f" {key}" if key else ""

    if isinstance(error, ResourceNotFoundError) or status == 404:
        return StorageFileNotFoundError(
            message=f"{operation.capitalize()} failed: not found {key or ''}".rstrip(),
            metadata=metadata,
        )

    if isinstance(error, ClientAuthenticationError) or status in {401, 403}:
        return StoragePermissionError(
            message=f"Permission denied for {operation}{subject}: {message}",
            metadata=metadata,
        )

    if (
        isinstance(error, (ServiceRequestTimeoutError, ServiceResponseTimeoutError))
        or error_code == "OperationTimedOut"
    ):
        return StorageTimeoutError(
            message=f"{operation.capitalize()} timed out{subject}",
            metadata=metadata,
        )

    if status == 416 or error_code in _AZURE_VALIDATION_CODES:
        return StorageValidationError(
            message=f"{operation.capitalize()} failed: {message}",
            metadata=metadata,
        )

    if isinstance(error, HttpResponseError) and status is not None:
        return StorageTransportError(
            message=f"{operation.capitalize()} failed{subject}: {message}",
            http_status=status,
            metadata=metadata,
        )

    return StorageTransportError(
        message=f"{operation.capitalize()} failed{subject}: backend unreachable ({type(error).__name__})",
        metadata=metadata,
    )
