"""Unit tests for the Azure Blob backend with an in-memory container client."""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError
import pytest

from storage_gateway.core.settings.storage import StorageSettings
from storage_gateway.infra.storage.backends.azure import AzureBlobBackend
from storage_gateway.infra.storage.backends.protocol import (
    ContentDisposition,
    ListFilesOptions,
    SearchField,
    SearchFilesOptions,
    StreamOptions,
    UploadRequest,
    Visibility,
)
from storage_gateway.infra.storage.exceptions import (
    StorageFileNotFoundError,
    StorageNotConfiguredError,
    StorageTransportError,
    StorageUploadError,
    StorageValidationError,
)

ACCOUNT_KEY = base64.b64encode(b"test-account-key").decode()
BLOB_HOST = "https://acct.blob.core.windows.net/media"
MODIFIED = datetime(2024, 5, 1, tzinfo=UTC)


class FakeDownloader:
    """Subset of ``StorageStreamDownloader`` the backend reads."""

    def __init__(self, data: bytes, properties: SimpleNamespace) -> None:
        self._data = data
        self.size = len(data)
        self.properties = properties

    async def chunks(self):
        for i in range(0, len(self._data), 4):
            yield self._data[i : i + 4]


class FakeBlobClient:
    """Blob client backed by the fake container's dict."""

    def __init__(self, container: FakeContainer, name: str) -> None:
        self._container = container
        self.name = name
        self.url = f"{BLOB_HOST}/{name}"

    def _properties(self) -> SimpleNamespace:
        if self.name not in self._container.blobs:
            raise ResourceNotFoundError("The specified blob does not exist.")
        return self._container.blobs[self.name][1]

    async def upload_blob(self, data, length=None, overwrite=False, metadata=None, content_settings=None):
        if self._container.fail_uploads is not None:
            raise self._container.fail_uploads
        body = data if isinstance(data, bytes) else b"".join([chunk async for chunk in data])
        properties = SimpleNamespace(
            name=self.name,
            size=len(body),
            metadata=dict(metadata or {}),
            content_settings=content_settings,
            last_modified=MODIFIED,
            creation_time=MODIFIED,
            etag='"0x8D1"',
        )
        self._container.blobs[self.name] = (body, properties)
        self._container.uploads.append({"name": self.name, "length": length, "overwrite": overwrite})
        return {"etag": '"0x8D1"', "last_modified": MODIFIED}

    async def get_blob_properties(self):
        return self._properties()

    async def delete_blob(self):
        self._properties()
        del self._container.blobs[self.name]

    async def download_blob(self, offset=None, length=None):
        if self._container.fail_downloads is not None:
            raise self._container.fail_downloads
        properties = self._properties()
        body = self._container.blobs[self.name][0]
        if offset is None:
            return FakeDownloader(body, properties)
        if offset >= len(body):
            error = HttpResponseError(message="The range specified is invalid for the current size of the resource.")
            error.status_code = 416
            error.error_code = "InvalidRange"
            raise error
        end = len(body) - 1 if length is None else min(offset + length - 1, len(body) - 1)
        ranged = SimpleNamespace(**vars(properties), content_range=f"bytes {offset}-{end}/{len(body)}")
        return FakeDownloader(body[offset : end + 1], ranged)


class FakeContainer:
    """In-memory stand-in for ``azure.storage.blob.aio.ContainerClient``."""

    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, SimpleNamespace]] = {}
        self.uploads: list[dict] = []
        self.fail_uploads: Exception | None = None
        self.fail_downloads: Exception | None = None
        self.list_calls: list[dict] = []

    def get_blob_client(self, name: str) -> FakeBlobClient:
        return FakeBlobClient(self, name)

    async def list_blobs(self, name_starts_with=None, include=None):
        self.list_calls.append({"name_starts_with": name_starts_with, "include": include})
        for name in sorted(self.blobs):
            if name_starts_with and not name.startswith(name_starts_with):
                continue
            yield self.blobs[name][1]

    async def get_container_properties(self):
        return {"name": "media"}


def _azure_settings(**overrides) -> StorageSettings:
    values = {
        "provider": "azure",
        "container": "media",
        "azure_account_name": "acct",
        "azure_account_key": ACCOUNT_KEY,
    }
    values.update(overrides)
    return StorageSettings(**values)


@pytest.fixture
def container() -> FakeContainer:
    return FakeContainer()


@pytest.fixture
def backend(container) -> AzureBlobBackend:
    return AzureBlobBackend(_azure_settings(), container_client=container)


async def _seed(backend: AzureBlobBackend) -> None:
    await backend.upload_file(
        UploadRequest(external_id="t1", buffer=b"Hello World", key="files/a.txt", metadata={"owner": "alice"})
    )
    await backend.upload_file(UploadRequest(external_id="img-1", buffer=b"\x89PNG" * 8, key="files/b.png"))
    await backend.upload_file(UploadRequest(external_id="d1", buffer=b"readme", key="docs/readme.txt"))


@pytest.mark.unit
class TestAzureConfiguration:
    """Test construction and lifecycle."""

    def test_missing_settings(self):
        """Test a container and a credential are required."""
        with pytest.raises(StorageNotConfiguredError) as exc_info:
            AzureBlobBackend(StorageSettings(provider="azure"))
        assert exc_info.value.extra["missing"] == [
            "STORAGE_CONTAINER",
            "STORAGE_AZURE_ACCOUNT_NAME",
            "STORAGE_AZURE_ACCOUNT_KEY",
        ]

    def test_connection_string_is_enough(self):
        """Test a connection string supplies the account, key and endpoint."""
        settings = _azure_settings(
            azure_account_name=None,
            azure_account_key=None,
            azure_connection_string=(
                f"DefaultEndpointsProtocol=https;AccountName=acct2;AccountKey={ACCOUNT_KEY};"
                "EndpointSuffix=core.windows.net"
            ),
        )
        assert settings.missing_settings() == []
        assert settings.effective_azure_account_name == "acct2"
        assert settings.effective_azure_account_url == "https://acct2.blob.core.windows.net"
        assert settings.get_azure_account_key() == ACCOUNT_KEY

    def test_injected_client_is_ready(self, backend):
        """Test an injected container client skips startup."""
        assert backend.is_ready
        assert backend.backend_name == "azure"
        assert backend.can_sign

    @pytest.mark.asyncio
    async def test_startup_builds_container_client(self):
        """Test startup creates a service client for the configured container."""
        backend = AzureBlobBackend(_azure_settings())
        await backend.startup()
        try:
            assert backend.is_ready
            assert backend._container.container_name == "media"
        finally:
            await backend.shutdown()
        assert not backend.is_ready

    @pytest.mark.asyncio
    async def test_health_check(self, backend, container):
        """Test the health check reads container properties."""
        assert await backend.health_check() is True
        container.get_container_properties = _raising(ServiceRequestError("no route"))
        assert await backend.health_check() is False


def _raising(error: Exception):
    async def _call(*args, **kwargs):
        raise error

    return _call


@pytest.mark.unit
class TestAzureUpload:
    """Test uploads."""

    @pytest.mark.asyncio
    async def test_private_upload(self, backend, container):
        """Test metadata carries the external id and the blob stays private."""
        result = await backend.upload_file(
            UploadRequest(external_id="t1", buffer=b"Hello World", filename="test.txt")
        )
        body, properties = container.blobs[result.key]
        assert body == b"Hello World"
        assert properties.metadata["external_id"] == "t1"
        assert properties.metadata["original_filename"] == "test.txt"
        assert properties.content_settings.content_type == "text/plain"
        assert container.uploads[0]["overwrite"] is True
        assert result.size == 11
        assert result.etag == "0x8D1"
        assert result.actual_visibility == Visibility.PRIVATE
        assert result.public_url is None
        assert result.url == f"{BLOB_HOST}/{result.key}"

    @pytest.mark.asyncio
    async def test_public_upload_gets_sas_url(self, backend):
        """Test public uploads report temporary-public with a signed read URL."""
        result = await backend.upload_file(
            UploadRequest(external_id="p", buffer=b"x", key="pub/x.png", visibility=Visibility.PUBLIC)
        )
        assert result.visibility == Visibility.PUBLIC
        assert result.actual_visibility == Visibility.TEMPORARY_PUBLIC
        query = parse_qs(urlsplit(result.public_url).query)
        assert query["sp"] == ["r"]
        assert "sig" in query

    @pytest.mark.asyncio
    async def test_public_upload_without_key_stays_private(self, container):
        """Test SAS-token credentials cannot sign, so public uploads stay private."""
        settings = _azure_settings(azure_account_key=None, azure_sas_token="sv=2024&sig=abc")
        backend = AzureBlobBackend(settings, container_client=container)
        result = await backend.upload_file(
            UploadRequest(external_id="p", buffer=b"x", key="pub/x.png", visibility=Visibility.PUBLIC)
        )
        assert result.actual_visibility == Visibility.PRIVATE
        assert result.public_url is None

    @pytest.mark.asyncio
    async def test_stream_upload(self, backend, container):
        """Test async stream sources are passed through with their declared length."""

        async def chunks():
            yield b"ab"
            yield b"cd"

        result = await backend.upload_file(UploadRequest(external_id="s", stream=chunks(), size=4, key="s.bin"))
        assert container.blobs["s.bin"][0] == b"abcd"
        assert container.uploads[0]["length"] == 4
        assert result.size == 4

    @pytest.mark.asyncio
    async def test_service_error_wrapped(self, backend, container):
        """Test upload failures become upload errors with the mapped details."""
        error = HttpResponseError(message="One of the metadata names is invalid.")
        error.status_code = 400
        error.error_code = "InvalidMetadata"
        container.fail_uploads = error
        with pytest.raises(StorageUploadError) as exc_info:
            await backend.upload_file(UploadRequest(external_id="x", buffer=b"x", filename="x.txt"))
        assert exc_info.value.extra["azure_error_code"] == "InvalidMetadata"
        assert "x.txt" in exc_info.value.message


@pytest.mark.unit
class TestAzureLookup:
    """Test lookups, deletes and URLs."""

    @pytest.mark.asyncio
    async def test_find_file(self, backend):
        """Test blob properties become a file record."""
        await _seed(backend)
        record = await backend.find_file("files/a.txt")
        assert record.external_id == "t1"
        assert record.actual_size == 11
        assert record.metadata["owner"] == "alice"
        assert record.content_type == "text/plain"
        assert record.visibility == Visibility.PRIVATE
        assert record.last_modified == MODIFIED

    @pytest.mark.asyncio
    async def test_find_missing(self, backend):
        """Test a missing blob is None."""
        assert await backend.find_file("files/none.txt") is None

    @pytest.mark.asyncio
    async def test_find_by_external_id(self, backend, container):
        """Test the external id is matched on listing metadata."""
        await _seed(backend)
        record = await backend.find_file_by_external_id("img-1")
        assert record.key == "files/b.png"
        assert container.list_calls[-1]["include"] == ["metadata"]
        assert await backend.find_file_by_external_id("nope") is None

    @pytest.mark.asyncio
    async def test_delete(self, backend, container):
        """Test deletes by external id remove the blob."""
        await _seed(backend)
        await backend.delete_file_by_external_id("t1")
        assert "files/a.txt" not in container.blobs

    @pytest.mark.asyncio
    async def test_delete_missing(self, backend):
        """Test deleting a missing blob is not found."""
        with pytest.raises(StorageFileNotFoundError):
            await backend.delete_file("files/none.txt")

    @pytest.mark.asyncio
    async def test_sas_url(self, backend):
        """Test download URLs are read-only SAS URLs with the disposition."""
        await _seed(backend)
        url = await backend.get_file_url("files/a.txt", ttl=600, disposition=ContentDisposition.INLINE)
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == f"{BLOB_HOST}/files/a.txt"
        assert query["sp"] == ["r"]
        assert query["rscd"] == ['inline; filename="a.txt"']

    @pytest.mark.asyncio
    async def test_cdn_url_without_key(self, container):
        """Test a backend that cannot sign falls back to the CDN URL."""
        settings = _azure_settings(
            azure_account_key=None, azure_sas_token="sv=2024&sig=abc", cdn_url="https://cdn.test/"
        )
        backend = AzureBlobBackend(settings, container_client=container)
        await _seed(backend)
        assert await backend.get_file_url("files/a.txt") == "https://cdn.test/files/a.txt"

    @pytest.mark.asyncio
    async def test_url_for_missing_blob(self, backend):
        """Test URLs are only issued for existing blobs."""
        with pytest.raises(StorageFileNotFoundError):
            await backend.get_file_url("files/none.txt")


@pytest.mark.unit
class TestAzureStreams:
    """Test ranged downloads."""

    @pytest.mark.asyncio
    async def test_ranged_stream(self, backend):
        """Test offset and length reach download_blob and the range is parsed."""
        await _seed(backend)
        stream = await backend.open_stream("files/a.txt", StreamOptions(start=6, end=10))
        assert stream.status_code == 206
        assert (stream.range.start, stream.range.end, stream.range.total) == (6, 10, 11)
        assert await stream.read() == b"World"

    @pytest.mark.asyncio
    async def test_full_stream(self, backend):
        """Test unranged downloads are 200 without a range."""
        await _seed(backend)
        stream = await backend.open_stream("files/a.txt", StreamOptions())
        assert stream.status_code == 200
        assert stream.range is None
        assert stream.content_type == "text/plain"
        assert await stream.read() == b"Hello World"

    @pytest.mark.asyncio
    async def test_range_past_end(self, backend):
        """Test an unsatisfiable range is a validation error with status 416."""
        await _seed(backend)
        with pytest.raises(StorageValidationError) as exc_info:
            await backend.open_stream("files/a.txt", StreamOptions(start=50))
        assert exc_info.value.extra["http_status"] == 416

    @pytest.mark.asyncio
    async def test_negative_start_rejected(self, backend):
        """Test negative bounds fail before any request is made."""
        with pytest.raises(StorageValidationError):
            await backend.open_stream("files/a.txt", StreamOptions(start=-1))

    @pytest.mark.asyncio
    async def test_missing_blob(self, backend):
        """Test a missing blob is not found."""
        with pytest.raises(StorageFileNotFoundError):
            await backend.open_stream("files/none.txt", StreamOptions())

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self, backend, container):
        """Test connection failures without a response map to transport errors."""
        container.fail_downloads = ServiceRequestError("Connection reset")
        with pytest.raises(StorageTransportError) as exc_info:
            await backend.open_stream("files/a.txt", StreamOptions())
        assert exc_info.value.http_status is None


@pytest.mark.unit
class TestAzureListing:
    """Test listing and search over inline metadata."""

    @pytest.mark.asyncio
    async def test_prefix_narrows_listing(self, backend, container):
        """Test the prefix is pushed down to list_blobs."""
        await _seed(backend)
        result = await backend.list_files(ListFilesOptions(prefix="files/"))
        assert [r.key for r in result.files] == ["files/a.txt", "files/b.png"]
        assert container.list_calls[-1]["name_starts_with"] == "files/"

    @pytest.mark.asyncio
    async def test_metadata_filter(self, backend):
        """Test metadata filters work without per-blob property reads."""
        await _seed(backend)
        result = await backend.list_files(ListFilesOptions(metadata={"owner": "alice"}))
        assert [r.external_id for r in result.files] == ["t1"]

    @pytest.mark.asyncio
    async def test_search_by_external_id(self, backend):
        """Test free-text search scoped to external ids."""
        await _seed(backend)
        result = await backend.search_files(
            SearchFilesOptions(query="IMG", search_fields=(SearchField.EXTERNAL_ID,))
        )
        assert [r.key for r in result.files] == ["files/b.png"]
        assert result.query == "IMG"


@pytest.mark.unit
class TestAzureVisibility:
    """Test SAS-based visibility."""

    @pytest.mark.asyncio
    async def test_make_public_issues_sas(self, backend):
        """Test public requests become temporary-public with an expiry."""
        await _seed(backend)
        result = await backend.set_visibility("files/a.txt", Visibility.PUBLIC)
        assert result.success is True
        assert result.requested_visibility == Visibility.PUBLIC
        assert result.actual_visibility == Visibility.TEMPORARY_PUBLIC
        assert result.public_url_expires_at > datetime.now(UTC)
        assert result.provider_specific["expiration_extensible"] is True
        assert result.public_url.endswith(result.provider_specific["sas_token"])

    @pytest.mark.asyncio
    async def test_make_private(self, backend):
        """Test private requests succeed without changes."""
        await _seed(backend)
        result = await backend.set_visibility_by_external_id("t1", Visibility.PRIVATE)
        assert result.success is True
        assert result.actual_visibility == Visibility.PRIVATE

    @pytest.mark.asyncio
    async def test_public_without_key_fails(self, container):
        """Test a backend without an account key reports a failed result."""
        settings = _azure_settings(azure_account_key=None, azure_sas_token="sv=2024&sig=abc")
        backend = AzureBlobBackend(settings, container_client=container)
        await _seed(backend)
        result = await backend.set_visibility("files/a.txt", Visibility.PUBLIC)
        assert result.success is False
        assert result.actual_visibility == Visibility.PRIVATE
        assert "SAS" in result.message

    @pytest.mark.asyncio
    async def test_missing_file(self, backend):
        """Test a missing blob is a failed result, not an exception."""
        result = await backend.set_visibility("files/none.txt", Visibility.PUBLIC)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_get_visibility(self, backend):
        """Test blobs always report private with temporary access available."""
        await _seed(backend)
        status = await backend.get_visibility_by_external_id("t1")
        assert status.visibility == Visibility.PRIVATE
        assert status.can_make_public is True
        assert status.supports_temporary_access is True
