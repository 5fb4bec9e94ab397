"""Upload request validation, preparation and the two-phase upload protocol.

Every backend validates and prepares uploads the same way:
- Exactly one content source (file path, stream or buffer)
- Streams must declare their size up front
- Filename, storage key and content type inferred when omitted
- The requested visibility is recorded in metadata

The descriptor backend then drives ``UploadOrchestrator``:

    create descriptor -> PUT content -> commit -> refetch metadata

Steps after the descriptor exists are wrapped into one ``StorageUploadError``
naming the file, the step and the cause. They are not retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol

from storage_gateway.infra.storage import metrics
from storage_gateway.infra.storage.backends.protocol import (
    FileRecord,
    UploadRequest,
    UploadStatus,
    Visibility,
)
from storage_gateway.infra.storage.exceptions import (
    StorageError,
    StorageProtocolError,
    StorageUploadError,
    StorageValidationError,
)
from storage_gateway.infra.storage.path import (
    filename_from_key,
    generate_storage_key,
    infer_content_type,
    validate_key,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator
    from datetime import datetime

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class PreparedUpload:
    """Upload facts resolved before any network call."""

    filename: str
    key: str
    content_type: str
    size: int
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadDescriptor:
    """Server reservation returned by descriptor creation."""

    file_id: str
    upload_url: str
    expires_at: datetime | None = None


class DescriptorApi(Protocol):
    """Metadata endpoints the orchestrator drives."""

    async def create_descriptor(self, payload: dict[str, Any]) -> UploadDescriptor: ...

    async def commit_upload(self, file_id: str, actual_size: int) -> None: ...

    async def get_file(self, file_id: str) -> FileRecord: ...

    async def delete_file(self, file_id: str) -> None: ...


class ContentUploader(Protocol):
    """Credential-free transfer of content to a presigned URL."""

    async def put_content(
        self,
        url: str,
        body: bytes | AsyncIterable[bytes],
        size: int,
        content_type: str,
    ) -> None: ...


def validate_upload_request(request: UploadRequest) -> str:
    """Check the content-source invariants of an upload request.

    Returns:
        The source kind: "file_path", "stream" or "buffer"

    Raises:
        StorageProtocolError: If zero or several sources are set, or a stream
            has no declared size
        StorageValidationError: If the external id is empty or size negative
    """
    sources = {
        "file_path": request.file_path,
        "stream": request.stream,
        "buffer": request.buffer,
    }
    provided = [name for name, value in sources.items() if value is not None]
    if len(provided) != 1:
        raise StorageProtocolError(
            "Exactly one of file_path, stream, or buffer must be provided",
            metadata={"provided": provided, "external_id": request.external_id},
        )

    if not request.external_id or not request.external_id.strip():
        raise StorageValidationError("external_id must not be empty")

    if request.size is not None and request.size < 0:
        raise StorageValidationError(
            f"size must be >= 0, got {request.size}",
            metadata={"external_id": request.external_id},
        )

    kind = provided[0]
    if kind == "stream" and request.size is None:
        raise StorageProtocolError(
            "File size must be provided when uploading from a stream",
            metadata={"external_id": request.external_id},
        )
    return kind


async def prepare_upload(request: UploadRequest, namespace: str = "files") -> PreparedUpload:
    """Validate a request and resolve its filename, key, content type and size.

    Raises:
        StorageProtocolError: If the source invariants are violated
        StorageValidationError: If the key is invalid or the source file is missing
    """
    kind = validate_upload_request(request)

    if kind == "file_path":
        path = Path(request.file_path)  # type: ignore[arg-type]
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError as e:
            raise StorageValidationError(
                f"Upload source not found: {path}",
                metadata={"file_path": str(path)},
            ) from e
        size = stat.st_size
        default_name: str | None = path.name
    elif kind == "buffer":
        size = len(request.buffer)  # type: ignore[arg-type]
        default_name = None
    else:
        size = request.size  # type: ignore[assignment]
        default_name = None

    filename = (
        request.filename
        or default_name
        or (filename_from_key(request.key) if request.key else None)
        or request.external_id
    )
    key = request.key or generate_storage_key(request.external_id, filename, namespace)
    try:
        validate_key(key)
    except ValueError as e:
        raise StorageValidationError(str(e), metadata={"key": key}) from e

    metadata = {**request.metadata, "visibility": Visibility(request.visibility).value}

    return PreparedUpload(
        filename=filename,
        key=key,
        content_type=request.content_type or infer_content_type(filename),
        size=size,
        metadata=metadata,
    )


async def _read_file(path: Path, chunk_size: int) -> AsyncIterator[bytes]:
    handle = await asyncio.to_thread(path.open, "rb")
    try:
        while chunk := await asyncio.to_thread(handle.read, chunk_size):
            yield chunk
    finally:
        await asyncio.to_thread(handle.close)


async def _read_binary_io(stream: BinaryIO, chunk_size: int) -> AsyncIterator[bytes]:
    while chunk := await asyncio.to_thread(stream.read, chunk_size):
        yield chunk


def iter_upload_source(
    request: UploadRequest,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """Iterate the content of a validated request in chunks.

    Blocking reads of files and binary file objects run in worker threads.
    """
    if request.buffer is not None:
        buffer = request.buffer

        async def _single() -> AsyncIterator[bytes]:
            yield buffer

        return _single()
    if request.file_path is not None:
        return _read_file(Path(request.file_path), chunk_size)
    stream = request.stream
    if hasattr(stream, "__aiter__"):
        return aiter(stream)  # type: ignore[arg-type]
    return _read_binary_io(stream, chunk_size)  # type: ignore[arg-type]


class CountingBody:
    """Async byte iterable that counts what the transport actually consumed."""

    def __init__(self, chunks: AsyncIterator[bytes]) -> None:
        self._chunks = chunks
        self.bytes_sent = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._chunks:
            self.bytes_sent += len(chunk)
            yield chunk


class UploadOrchestrator:
    """Drives the four-step descriptor upload protocol.

    1. Create the descriptor (reserves ``file_id`` and a presigned URL)
    2. PUT the content to the presigned URL without the API credential
    3. Commit the byte count observed during transmission
    4. Refetch the record so the result reflects server-confirmed facts

    A descriptor left behind by a failure in steps 2-4 is only deleted when
    ``cleanup_failed_uploads`` is set; retries should reuse the external id.
    """

    def __init__(
        self,
        api: DescriptorApi,
        uploader: ContentUploader,
        *,
        project_id: str | None = None,
        namespace: str = "files",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        cleanup_failed_uploads: bool = False,
    ) -> None:
        self._api = api
        self._uploader = uploader
        self.project_id = project_id
        self.namespace = namespace
        self.chunk_size = chunk_size
        self.cleanup_failed_uploads = cleanup_failed_uploads

    def _descriptor_payload(self, request: UploadRequest, prepared: PreparedUpload) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "file_path": prepared.key,
            "original_filename": prepared.filename,
            "content_type": prepared.content_type,
            "file_size": prepared.size,
            "external_id": request.external_id,
            "metadata": prepared.metadata,
        }
        if self.project_id:
            payload["project_id"] = self.project_id
        return payload

    async def _transmit(
        self,
        descriptor: UploadDescriptor,
        request: UploadRequest,
        prepared: PreparedUpload,
    ) -> int:
        if request.buffer is not None:
            await self._uploader.put_content(
                descriptor.upload_url,
                request.buffer,
                prepared.size,
                prepared.content_type,
            )
            return len(request.buffer)

        body = CountingBody(iter_upload_source(request, self.chunk_size))
        await self._uploader.put_content(
            descriptor.upload_url,
            body,
            prepared.size,
            prepared.content_type,
        )
        if body.bytes_sent != prepared.size:
            logger.warning(
                "Transmitted size differs from declared size",
                extra={
                    "file_id": descriptor.file_id,
                    "declared_size": prepared.size,
                    "bytes_sent": body.bytes_sent,
                },
            )
        return body.bytes_sent

    async def _abandon(self, file_id: str, step: str) -> bool:
        if not self.cleanup_failed_uploads:
            logger.warning(
                "Upload descriptor left orphaned after failure",
                extra={"file_id": file_id, "step": step},
            )
            metrics.record_orphaned_descriptor(cleaned_up=False)
            return False

        try:
            await self._api.delete_file(file_id)
        except StorageError as e:
            logger.warning(
                "Failed to clean up upload descriptor",
                extra={"file_id": file_id, "step": step, "error": e.message},
            )
            metrics.record_orphaned_descriptor(cleaned_up=False)
            return False

        logger.info("Cleaned up upload descriptor", extra={"file_id": file_id, "step": step})
        metrics.record_orphaned_descriptor(cleaned_up=True)
        return True

    async def upload(self, request: UploadRequest) -> FileRecord:
        """Upload content through the descriptor protocol.

        Args:
            request: Upload request with exactly one content source

        Returns:
            The canonical record refetched after commit

        Raises:
            StorageProtocolError: Before any network call, on source violations
            StorageError: If descriptor creation fails (nothing to clean up)
            StorageUploadError: If transmit, commit or refetch fails
        """
        prepared = await prepare_upload(request, self.namespace)

        descriptor = await self._api.create_descriptor(self._descriptor_payload(request, prepared))
        logger.debug(
            "Upload descriptor created",
            extra={"file_id": descriptor.file_id, "key": prepared.key, "status": UploadStatus.PENDING},
        )

        step = "transmit"
        try:
            sent = await self._transmit(descriptor, request, prepared)
            step = "commit"
            await self._api.commit_upload(descriptor.file_id, sent)
            step = "refetch"
            record = await self._api.get_file(descriptor.file_id)
        except (StorageError, OSError) as e:
            cause = e.message if isinstance(e, StorageError) else str(e)
            cleaned_up = await self._abandon(descriptor.file_id, step)
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: {step} failed: {cause}",
                metadata={
                    "filename": prepared.filename,
                    "file_id": descriptor.file_id,
                    "external_id": request.external_id,
                    "step": step,
                    "descriptor_cleaned_up": cleaned_up,
                },
            ) from e

        logger.info(
            "File uploaded",
            extra={
                "file_id": record.file_id,
                "external_id": record.external_id,
                "key": record.key,
                "size_bytes": record.size,
                "content_type": record.content_type,
            },
        )
        return record
