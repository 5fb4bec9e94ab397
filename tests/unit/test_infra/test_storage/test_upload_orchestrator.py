"""Unit tests for upload validation, preparation and the descriptor upload protocol."""

from __future__ import annotations

import io
from unittest.mock import AsyncMock, MagicMock

import pytest

from storage_gateway.infra.storage.backends.protocol import (
    FileRecord,
    UploadRequest,
    UploadStatus,
    Visibility,
)
from storage_gateway.infra.storage.exceptions import (
    StorageProtocolError,
    StorageTransportError,
    StorageUploadError,
    StorageValidationError,
)
from storage_gateway.infra.storage.operations.upload import (
    UploadDescriptor,
    UploadOrchestrator,
    iter_upload_source,
    prepare_upload,
    validate_upload_request,
)


async def _collect(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])


@pytest.fixture
def api():
    """Mock descriptor API that records one completed file."""
    mock = MagicMock()
    mock.create_descriptor = AsyncMock(
        return_value=UploadDescriptor(file_id="f_1", upload_url="https://objects.test/upload/f_1")
    )
    mock.commit_upload = AsyncMock()
    mock.get_file = AsyncMock(
        return_value=FileRecord(
            key="files/t1.txt",
            content_type="text/plain",
            file_id="f_1",
            external_id="t1",
            expected_size=11,
            actual_size=11,
            upload_status=UploadStatus.COMPLETED,
        )
    )
    mock.delete_file = AsyncMock()
    return mock


@pytest.fixture
def uploader():
    """Mock content uploader that drains async bodies like a transport would."""
    mock = MagicMock()

    async def put_content(url, body, size, content_type):
        if not isinstance(body, bytes):
            async for _ in body:
                pass

    mock.put_content = AsyncMock(side_effect=put_content)
    return mock


@pytest.mark.unit
class TestValidateUploadRequest:
    """Test the content-source invariants."""

    def test_no_source(self):
        """Test zero sources is a protocol violation."""
        with pytest.raises(StorageProtocolError) as exc_info:
            validate_upload_request(UploadRequest(external_id="x"))
        assert exc_info.value.extra["provided"] == []

    def test_two_sources(self, tmp_path):
        """Test several sources is a protocol violation."""
        with pytest.raises(StorageProtocolError):
            validate_upload_request(
                UploadRequest(external_id="x", buffer=b"a", file_path=tmp_path / "a")
            )

    def test_stream_requires_size(self):
        """Test a stream without a declared size is rejected."""
        with pytest.raises(StorageProtocolError, match="size must be provided"):
            validate_upload_request(UploadRequest(external_id="x", stream=io.BytesIO(b"a")))

    def test_empty_external_id(self):
        """Test a blank external id is a validation error."""
        with pytest.raises(StorageValidationError):
            validate_upload_request(UploadRequest(external_id="  ", buffer=b"a"))

    def test_negative_size(self):
        """Test a negative declared size is rejected."""
        with pytest.raises(StorageValidationError):
            validate_upload_request(UploadRequest(external_id="x", buffer=b"a", size=-1))

    def test_returns_source_kind(self):
        """Test the single source kind is reported."""
        assert validate_upload_request(UploadRequest(external_id="x", buffer=b"")) == "buffer"


@pytest.mark.unit
class TestPrepareUpload:
    """Test inference of filename, key, content type and size."""

    @pytest.mark.asyncio
    async def test_buffer_with_filename(self):
        """Test filename drives content type and key extension."""
        prepared = await prepare_upload(
            UploadRequest(external_id="t1", buffer=b"Hello World", filename="test.txt")
        )
        assert prepared.size == 11
        assert prepared.filename == "test.txt"
        assert prepared.content_type == "text/plain"
        assert prepared.key.startswith("files/t1-")
        assert prepared.key.endswith(".txt")

    @pytest.mark.asyncio
    async def test_file_path_source(self, tmp_path):
        """Test size and filename come from the file."""
        source = tmp_path / "photo.png"
        source.write_bytes(b"\x89PNG" + b"0" * 96)
        prepared = await prepare_upload(UploadRequest(external_id="p", file_path=source))
        assert prepared.size == 100
        assert prepared.filename == "photo.png"
        assert prepared.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        """Test a missing source file is a validation error."""
        with pytest.raises(StorageValidationError):
            await prepare_upload(UploadRequest(external_id="p", file_path=tmp_path / "nope.bin"))

    @pytest.mark.asyncio
    async def test_explicit_key_and_content_type(self):
        """Test explicit values win over inference."""
        prepared = await prepare_upload(
            UploadRequest(
                external_id="k",
                buffer=b"{}",
                key="data/config.bin",
                content_type="application/json",
            )
        )
        assert prepared.key == "data/config.bin"
        assert prepared.filename == "config.bin"
        assert prepared.content_type == "application/json"

    @pytest.mark.asyncio
    async def test_invalid_key(self):
        """Test a traversal key is rejected before any transfer."""
        with pytest.raises(StorageValidationError):
            await prepare_upload(UploadRequest(external_id="k", buffer=b"x", key="../escape"))

    @pytest.mark.asyncio
    async def test_visibility_recorded_in_metadata(self):
        """Test the requested visibility travels in metadata."""
        prepared = await prepare_upload(
            UploadRequest(
                external_id="v",
                buffer=b"x",
                metadata={"owner": "alice"},
                visibility=Visibility.PUBLIC,
            )
        )
        assert prepared.metadata == {"owner": "alice", "visibility": "public"}


@pytest.mark.unit
class TestIterUploadSource:
    """Test chunked reading of every source kind."""

    @pytest.mark.asyncio
    async def test_file_chunks(self, tmp_path):
        """Test files are read in chunks of the requested size."""
        source = tmp_path / "data.bin"
        source.write_bytes(b"abcdefghij")
        chunks = [c async for c in iter_upload_source(UploadRequest(external_id="d", file_path=source), 4)]
        assert chunks == [b"abcd", b"efgh", b"ij"]

    @pytest.mark.asyncio
    async def test_binary_io(self):
        """Test binary file objects are read fully."""
        request = UploadRequest(external_id="d", stream=io.BytesIO(b"stream-data"), size=11)
        assert await _collect(iter_upload_source(request, 3)) == b"stream-data"


@pytest.mark.unit
class TestUploadOrchestrator:
    """Test the create, transmit, commit and refetch sequence."""

    @pytest.mark.asyncio
    async def test_happy_path(self, api, uploader):
        """Test each step runs once, in order, with the transmitted size."""
        orchestrator = UploadOrchestrator(api, uploader, project_id="proj_1")
        record = await orchestrator.upload(
            UploadRequest(external_id="t1", buffer=b"Hello World", filename="test.txt")
        )

        payload = api.create_descriptor.await_args.args[0]
        assert payload["external_id"] == "t1"
        assert payload["file_size"] == 11
        assert payload["content_type"] == "text/plain"
        assert payload["project_id"] == "proj_1"
        uploader.put_content.assert_awaited_once_with(
            "https://objects.test/upload/f_1", b"Hello World", 11, "text/plain"
        )
        api.commit_upload.assert_awaited_once_with("f_1", 11)
        api.get_file.assert_awaited_once_with("f_1")
        assert record.size == 11

    @pytest.mark.asyncio
    async def test_commit_uses_bytes_actually_sent(self, api, uploader):
        """Test a stream shorter than declared commits the observed count."""

        async def chunks():
            yield b"12345"

        orchestrator = UploadOrchestrator(api, uploader)
        await orchestrator.upload(UploadRequest(external_id="s", stream=chunks(), size=8))
        api.commit_upload.assert_awaited_once_with("f_1", 5)

    @pytest.mark.asyncio
    async def test_protocol_error_before_network(self, api, uploader):
        """Test source violations never create a descriptor."""
        orchestrator = UploadOrchestrator(api, uploader)
        with pytest.raises(StorageProtocolError):
            await orchestrator.upload(UploadRequest(external_id="x", buffer=b"a", stream=io.BytesIO()))
        api.create_descriptor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_failure_is_not_wrapped(self, api, uploader):
        """Test a failure at creation propagates as-is."""
        api.create_descriptor.side_effect = StorageTransportError("down", http_status=500)
        orchestrator = UploadOrchestrator(api, uploader)
        with pytest.raises(StorageTransportError):
            await orchestrator.upload(UploadRequest(external_id="x", buffer=b"a"))
        uploader.put_content.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("step", ["transmit", "commit", "refetch"])
    async def test_step_failures_are_wrapped(self, api, uploader, step):
        """Test later failures become one upload error naming the step."""
        failure = StorageTransportError("boom", http_status=500)
        if step == "transmit":
            uploader.put_content.side_effect = failure
        elif step == "commit":
            api.commit_upload.side_effect = failure
        else:
            api.get_file.side_effect = failure

        orchestrator = UploadOrchestrator(api, uploader)
        with pytest.raises(StorageUploadError) as exc_info:
            await orchestrator.upload(UploadRequest(external_id="x", buffer=b"a", filename="a.txt"))

        error = exc_info.value
        assert error.extra["step"] == step
        assert error.extra["file_id"] == "f_1"
        assert error.extra["filename"] == "a.txt"
        assert "a.txt" in error.message
        assert "boom" in error.message
        assert error.__cause__ is failure
        api.delete_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cleanup_when_enabled(self, api, uploader):
        """Test the orphaned descriptor is deleted when cleanup is on."""
        uploader.put_content.side_effect = StorageTransportError("boom", http_status=403)
        orchestrator = UploadOrchestrator(api, uploader, cleanup_failed_uploads=True)
        with pytest.raises(StorageUploadError) as exc_info:
            await orchestrator.upload(UploadRequest(external_id="x", buffer=b"a"))
        api.delete_file.assert_awaited_once_with("f_1")
        assert exc_info.value.extra["descriptor_cleaned_up"] is True

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_original_error(self, api, uploader):
        """Test a failed cleanup does not mask the upload error."""
        api.commit_upload.side_effect = StorageTransportError("commit broke", http_status=500)
        api.delete_file.side_effect = StorageTransportError("delete broke", http_status=500)
        orchestrator = UploadOrchestrator(api, uploader, cleanup_failed_uploads=True)
        with pytest.raises(StorageUploadError, match="commit broke") as exc_info:
            await orchestrator.upload(UploadRequest(external_id="x", buffer=b"a"))
        assert exc_info.value.extra["descriptor_cleaned_up"] is False
