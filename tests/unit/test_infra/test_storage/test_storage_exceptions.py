"""Unit tests for the storage exception taxonomy and error mapping."""

from __future__ import annotations

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseTimeoutError,
)
from botocore.exceptions import ClientError, ConnectTimeoutError, EndpointConnectionError
import httpx
import pytest

from storage_gateway.core.exceptions import AppException
from storage_gateway.infra.external.base_client import InvalidResponseError
from storage_gateway.infra.storage.exceptions import (
    StorageError,
    StorageFileNotFoundError,
    StorageNotConfiguredError,
    StoragePermissionError,
    StorageTimeoutError,
    StorageTransportError,
    StorageValidationError,
    map_azure_error,
    map_boto_error,
    map_http_error,
)


def _status_error(status: int, body: str = "boom") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/api/v1/storage/files/f_1?sig=secret")
    response = httpx.Response(status, text=body, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} message"},
            "ResponseMetadata": {"HTTPStatusCode": status, "RequestId": "req-1"},
        },
        "GetObject",
    )


@pytest.mark.unit
class TestStorageErrorHierarchy:
    """Test the exception classes."""

    def test_all_errors_are_app_exceptions(self):
        """Test every storage error carries the problem-details fields."""
        error = StorageNotConfiguredError("no key", metadata={"backend": "descriptor"})
        assert isinstance(error, StorageError)
        assert isinstance(error, AppException)
        assert error.status_code == 503
        assert error.code == "STORAGE_NOT_CONFIGURED"
        assert error.type == "storage-not-configured"
        assert error.extra == {"backend": "descriptor"}
        assert str(error) == "no key"

    def test_transport_error_records_status_and_body(self):
        """Test transport errors expose the remote status and a bounded body."""
        error = StorageTransportError("bad", http_status=500, response_body="x" * 5000)
        assert error.http_status == 500
        assert error.extra["http_status"] == 500
        assert len(error.extra["response_body"]) == 2048


@pytest.mark.unit
class TestMapHttpError:
    """Test httpx error mapping."""

    def test_404_is_not_found(self):
        """Test a 404 maps to not found."""
        error = map_http_error(_status_error(404), operation="get_file", target="f_1")
        assert isinstance(error, StorageFileNotFoundError)
        assert error.extra["target"] == "f_1"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_statuses_are_permission_errors(self, status):
        """Test authorization failures map to permission errors."""
        error = map_http_error(_status_error(status), operation="list")
        assert isinstance(error, StoragePermissionError)
        assert error.extra["http_status"] == status

    def test_other_status_is_transport_error(self):
        """Test other statuses keep the status and body."""
        error = map_http_error(_status_error(500, "server down"), operation="commit")
        assert isinstance(error, StorageTransportError)
        assert error.http_status == 500
        assert error.response_body == "server down"

    def test_url_query_is_not_recorded(self):
        """Test signatures in the query string never reach error metadata."""
        error = map_http_error(_status_error(500), operation="commit")
        assert error.extra["url"] == "https://api.test/api/v1/storage/files/f_1"

    def test_timeout(self):
        """Test timeouts map to the timeout error."""
        request = httpx.Request("GET", "https://api.test")
        error = map_http_error(httpx.ReadTimeout("slow", request=request), operation="stream")
        assert isinstance(error, StorageTimeoutError)

    def test_network_failure(self):
        """Test connection failures are transport errors without a status."""
        request = httpx.Request("GET", "https://api.test")
        error = map_http_error(httpx.ConnectError("refused", request=request), operation="list")
        assert isinstance(error, StorageTransportError)
        assert error.http_status is None
        assert "backend unreachable" in error.message

    def test_invalid_body_is_transport_error(self):
        """Test a 2xx response that fails to decode keeps its status and body."""
        request = httpx.Request("GET", "https://api.test/api/v1/storage/files/f_1")
        response = httpx.Response(200, text="<html>proxy</html>", request=request)
        error = map_http_error(
            InvalidResponseError("not JSON", response=response),
            operation="get_file",
            target="f_1",
        )
        assert isinstance(error, StorageTransportError)
        assert error.http_status == 200
        assert error.response_body == "<html>proxy</html>"
        assert "invalid response body" in error.message


@pytest.mark.unit
class TestMapBotoError:
    """Test botocore error mapping."""

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("NoSuchKey", StorageFileNotFoundError),
            ("404", StorageFileNotFoundError),
            ("AccessDenied", StoragePermissionError),
            ("SlowDown", StorageTimeoutError),
            ("InvalidRange", StorageValidationError),
            ("InternalError", StorageTransportError),
        ],
    )
    def test_codes(self, code, expected):
        """Test error codes map onto the taxonomy."""
        error = map_boto_error(_client_error(code), operation="stream", key="files/a.txt")
        assert isinstance(error, expected)
        assert error.extra["aws_error_code"] == code
        assert error.extra["key"] == "files/a.txt"

    def test_unknown_code_keeps_status(self):
        """Test unmapped codes carry the HTTP status."""
        error = map_boto_error(_client_error("InternalError", 500), operation="upload")
        assert isinstance(error, StorageTransportError)
        assert error.http_status == 500

    def test_connection_failure_without_response(self):
        """Test botocore failures before any response are transport errors."""
        error = map_boto_error(
            EndpointConnectionError(endpoint_url="https://s3.test"),
            operation="stream",
            key="files/a.txt",
        )
        assert isinstance(error, StorageTransportError)
        assert error.http_status is None
        assert error.extra["key"] == "files/a.txt"
        assert "backend unreachable" in error.message

    def test_connect_timeout_is_timeout(self):
        """Test botocore connect timeouts map to the timeout error."""
        error = map_boto_error(ConnectTimeoutError(endpoint_url="https://s3.test"), operation="list")
        assert isinstance(error, StorageTimeoutError)


def _azure_error(status: int, code: str | None = None) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status}")
    error.status_code = status
    error.error_code = code
    return error


@pytest.mark.unit
class TestMapAzureError:
    """Test azure-core error mapping."""

    def test_not_found(self):
        """Test missing blobs map to not found."""
        error = map_azure_error(ResourceNotFoundError("gone"), operation="find", key="files/a.txt")
        assert isinstance(error, StorageFileNotFoundError)
        assert error.extra["key"] == "files/a.txt"

    @pytest.mark.parametrize(
        "azure_error",
        [ClientAuthenticationError("bad key"), _azure_error(403, "AuthorizationFailure")],
    )
    def test_permission(self, azure_error):
        """Test authentication and authorization failures map to permission errors."""
        assert isinstance(map_azure_error(azure_error, operation="upload"), StoragePermissionError)

    def test_timeout(self):
        """Test response timeouts map to the timeout error."""
        error = map_azure_error(ServiceResponseTimeoutError("slow"), operation="stream")
        assert isinstance(error, StorageTimeoutError)

    def test_invalid_range(self):
        """Test a 416 keeps its status for resume logic."""
        error = map_azure_error(_azure_error(416, "InvalidRange"), operation="stream")
        assert isinstance(error, StorageValidationError)
        assert error.extra["http_status"] == 416
        assert error.extra["azure_error_code"] == "InvalidRange"

    def test_server_error_keeps_status(self):
        """Test other HTTP failures carry their status."""
        error = map_azure_error(_azure_error(503, "ServerBusy"), operation="list")
        assert isinstance(error, StorageTransportError)
        assert error.http_status == 503

    def test_no_response(self):
        """Test request failures without a response are transport errors."""
        error = map_azure_error(ServiceRequestError("connection refused"), operation="list")
        assert isinstance(error, StorageTransportError)
        assert error.http_status is None
        assert "backend unreachable" in error.message
