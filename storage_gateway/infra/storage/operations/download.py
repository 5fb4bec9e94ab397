"""Range-aware streaming downloads.

Provides:
- ``FileStream``: the handle every backend returns from ``open_stream``
- ``CancellationScope``: races transport awaits against a deadline and a
  caller-supplied ``asyncio.Event``
- ``open_range_stream``: opens a stream against a resolved (signed) URL
- ``resume_download`` and ``StreamPool``: caller-level helpers for resuming
  partial downloads and capping concurrently open streams

Every exit path must release the stream. ``async with`` does it for you:

    async with await service.get_file_stream(key, StreamOptions(start=0, end=1023)) as stream:
        data = await stream.read()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from email.utils import parsedate_to_datetime
import inspect
import logging
from pathlib import Path
import re
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from storage_gateway.infra.storage import metrics
from storage_gateway.infra.storage.backends.protocol import ContentRange, StreamOptions
from storage_gateway.infra.storage.exceptions import (
    StorageCancelledError,
    StorageError,
    StorageProtocolError,
    StorageTimeoutError,
    StorageValidationError,
    map_http_error,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from datetime import datetime

    from storage_gateway.infra.storage.service import StorageService

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)


def build_range_header(start: int | None, end: int | None) -> str | None:
    """Build a ``Range`` header value, or None when no range was requested.

    Raises:
        StorageValidationError: If the bounds are negative or inverted
    """
    if start is None and end is None:
        return None
    if (start is not None and start < 0) or (end is not None and end < 0):
        raise StorageValidationError(
            "Range bounds must be non-negative", metadata={"start": start, "end": end}
        )
    if start is not None and end is not None and end < start:
        raise StorageValidationError(
            f"Range end ({end}) is before start ({start})",
            metadata={"start": start, "end": end},
        )
    return f"bytes={start or 0}-{'' if end is None else end}"


def parse_content_range(value: str | None) -> ContentRange | None:
    """Parse ``bytes <start>-<end>/<total>``; returns None when absent or malformed."""
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value)
    if match is None:
        return None
    start, end, total = match.groups()
    return ContentRange(
        start=int(start),
        end=int(end),
        total=None if total == "*" else int(total),
    )


def parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _close_awaitable(awaitable: Awaitable[Any]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


class CancellationScope:
    """Deadline and cancellation signal shared by every await of one operation.

    The deadline is fixed when the scope is created, so a slow first byte
    and slow later reads draw from the same budget.
    """

    def __init__(
        self,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        operation: str = "stream",
        target: str | None = None,
    ) -> None:
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.operation = operation
        self.target = target
        self._deadline = (
            asyncio.get_running_loop().time() + timeout if timeout is not None else None
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - asyncio.get_running_loop().time()

    def _timeout_error(self) -> StorageTimeoutError:
        return StorageTimeoutError(
            f"{self.operation.capitalize()} timed out after {self.timeout}s",
            metadata={
                "operation": self.operation,
                "timeout_seconds": self.timeout,
                "target": self.target,
            },
        )

    def _cancelled_error(self) -> StorageCancelledError:
        return StorageCancelledError(
            f"{self.operation.capitalize()} cancelled by caller",
            metadata={"operation": self.operation, "target": self.target},
        )

    def check(self) -> None:
        """Raise if the scope is already cancelled or past its deadline."""
        if self.cancelled:
            raise self._cancelled_error()
        remaining = self._remaining()
        if remaining is not None and remaining <= 0:
            raise self._timeout_error()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the deadline passes or the event fires first.

        Raises:
            StorageTimeoutError: If the deadline passed
            StorageCancelledError: If the cancel event was set
        """
        try:
            self.check()
        except StorageError:
            _close_awaitable(awaitable)
            raise

        if self.cancel_event is None and self._deadline is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter: asyncio.Task[Any] | None = None
        if self.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await task

        if self.cancelled:
            raise self._cancelled_error()
        raise self._timeout_error()


class FileStream:
    """An open, possibly partial, byte stream of one stored file.

    Attributes:
        key: Key or identity the stream was opened for
        status_code: 206 for partial content, 200 otherwise
        content_length: Bytes this response will deliver, when known
        content_type: MIME type reported by the backend
        last_modified: Modification time reported by the backend
        etag: Entity tag (falls back to the file id on the descriptor backend)
        accepts_ranges: Backend advertises ``Accept-Ranges: bytes``
        range: Parsed ``Content-Range`` for 206 responses, None otherwise

    The stream must be released on every exit path. ``release()`` is
    idempotent; iteration to the end and ``async with`` release
    automatically.
    """

    def __init__(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        release: Callable[[], Awaitable[None]],
        *,
        status_code: int = 200,
        content_length: int | None = None,
        content_type: str | None = None,
        last_modified: datetime | None = None,
        etag: str | None = None,
        accepts_ranges: bool = False,
        content_range: ContentRange | None = None,
        scope: CancellationScope | None = None,
    ) -> None:
        self.key = key
        self.status_code = status_code
        self.content_length = content_length
        self.content_type = content_type
        self.last_modified = last_modified
        self.etag = etag
        self.accepts_ranges = accepts_ranges
        self.range = content_range
        self._chunks = chunks
        self._release = release
        self._scope = scope
        self._released = False
        metrics.storage_streams_open.inc()

    @property
    def is_partial_content(self) -> bool:
        return self.status_code == 206

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        """Release the underlying connection or file handle (idempotent)."""
        if self._released:
            return
        self._released = True
        metrics.storage_streams_open.dec()
        try:
            await self._release()
        except Exception as e:
            logger.warning(
                "Error releasing stream",
                extra={"key": self.key, "error": str(e)},
            )

    async def _next_chunk(self) -> bytes:
        awaitable = anext(self._chunks)
        if self._scope is None:
            return await awaitable
        return await self._scope.run(awaitable)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield chunks until the stream ends, then release it.

        Raises:
            StorageTimeoutError: If the scope deadline passes mid-read
            StorageCancelledError: If the cancel event fires mid-read
            StorageTransportError: If the connection fails mid-read
        """
        if self._released:
            raise StorageProtocolError(
                "Stream already released", metadata={"key": self.key}
            )
        try:
            while True:
                try:
                    chunk = await self._next_chunk()
                except StopAsyncIteration:
                    break
                except httpx.HTTPError as e:
                    raise map_http_error(e, operation="stream", target=self.key) from e
                if chunk:
                    yield chunk
        finally:
            await self.release()

    async def read(self) -> bytes:
        """Read the remaining content into memory and release the stream."""
        buffer = bytearray()
        async for chunk in self.iter_bytes():
            buffer.extend(chunk)
        return bytes(buffer)

    async def __aenter__(self) -> FileStream:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()

    def __repr__(self) -> str:
        return (
            f"FileStream(key={self.key!r}, status_code={self.status_code}, "
            f"content_length={self.content_length}, range={self.range})"
        )


async def open_range_stream(
    client: httpx.AsyncClient,
    url: str,
    options: StreamOptions,
    *,
    key: str,
    etag_fallback: str | None = None,
) -> FileStream:
    """Open a stream against a resolved URL, honoring an optional byte range.

    The ``Range`` header is sent only when ``options.start`` or
    ``options.end`` is set. A 206 response yields a parsed ``range``; a 200
    response leaves it None.

    Args:
        client: Credential-free HTTP client
        url: Signed URL to fetch
        options: Range, timeout and cancellation
        key: Key or identity used in errors and logs
        etag_fallback: ETag reported when the response carries none

    Raises:
        StorageValidationError: If the range bounds are invalid
        StorageFileNotFoundError / StoragePermissionError / StorageTransportError:
            If the response is not 2xx
        StorageTimeoutError / StorageCancelledError: If the scope aborts
    """
    range_header = build_range_header(options.start, options.end)
    headers = {"Range": range_header} if range_header else {}
    scope = CancellationScope(options.timeout, options.cancel_event, operation="stream", target=key)

    request = client.build_request("GET", url, headers=headers)
    try:
        response = await scope.run(client.send(request, stream=True))
    except httpx.HTTPError as e:
        raise map_http_error(e, operation="stream", target=key) from e

    if response.status_code >= 400:
        try:
            await response.aread()
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise map_http_error(e, operation="stream", target=key) from e
        finally:
            await response.aclose()

    content_length = response.headers.get("Content-Length")
    content_range = (
        parse_content_range(response.headers.get("Content-Range"))
        if response.status_code == 206
        else None
    )

    logger.debug(
        "Stream opened",
        extra={
            "key": key,
            "status_code": response.status_code,
            "range": range_header,
        },
    )

    return FileStream(
        key=key,
        chunks=response.aiter_bytes(options.chunk_size),
        release=response.aclose,
        status_code=response.status_code,
        content_length=int(content_length) if content_length and content_length.isdigit() else None,
        content_type=response.headers.get("Content-Type"),
        last_modified=parse_http_date(response.headers.get("Last-Modified")),
        etag=(response.headers.get("ETag") or "").strip('"') or etag_fallback,
        accepts_ranges=response.headers.get("Accept-Ranges", "").lower() == "bytes",
        content_range=content_range,
        scope=scope,
    )


def _is_range_not_satisfiable(error: StorageError) -> bool:
    return (
        getattr(error, "http_status", None) == 416
        or error.extra.get("http_status") == 416
        or error.extra.get("aws_error_code") == "InvalidRange"
    )


async def resume_download(
    service: StorageService,
    key: str,
    dest: str | Path,
    *,
    by_external_id: bool = False,
    timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    on_progress: Callable[[int], None] | None = None,
) -> int:
    """Download a file to ``dest``, continuing from any partial content already there.

    The existing length of ``dest`` becomes the range start. If the backend
    answers a ranged request with full content, the file is rewritten from
    the beginning. A start at or past the end counts as already complete.

    Args:
        service: Storage service to stream from
        key: Storage key, or external id when ``by_external_id`` is set
        dest: Local destination path
        by_external_id: Treat ``key`` as an external id
        timeout: Seconds allowed for the whole transfer
        cancel_event: Setting this event aborts the transfer
        on_progress: Callback(bytes_written_so_far)

    Returns:
        Bytes written by this call

    Example:
        written = await resume_download(service, "files/big.iso", "/tmp/big.iso")
    """
    dest_path = Path(dest)
    await asyncio.to_thread(dest_path.parent.mkdir, parents=True, exist_ok=True)
    existing = dest_path.stat().st_size if dest_path.exists() else 0

    options = StreamOptions(
        start=existing or None,
        timeout=timeout,
        cancel_event=cancel_event,
    )
    opener = service.get_file_stream_by_external_id if by_external_id else service.get_file_stream
    try:
        stream = await opener(key, options)
    except StorageError as e:
        if existing and _is_range_not_satisfiable(e):
            logger.info(
                "Download already complete",
                extra={"key": key, "dest": str(dest_path), "size_bytes": existing},
            )
            return 0
        raise

    mode = "ab" if existing and stream.is_partial_content else "wb"
    written = 0
    handle = await asyncio.to_thread(open, dest_path, mode)
    try:
        async with stream:
            async for chunk in stream.iter_bytes():
                await asyncio.to_thread(handle.write, chunk)
                written += len(chunk)
                if on_progress:
                    on_progress(written)
    finally:
        await asyncio.to_thread(handle.close)

    logger.info(
        "Download finished",
        extra={
            "key": key,
            "dest": str(dest_path),
            "resumed_from": existing if mode == "ab" else 0,
            "size_bytes": written,
        },
    )
    return written


class StreamPool:
    """Caps how many streams a caller holds open at once.

    Example:
        pool = StreamPool(max_streams=4)

        async def fetch(key: str) -> bytes:
            async with pool.open(lambda: service.get_file_stream(key)) as stream:
                return await stream.read()

        await asyncio.gather(*(fetch(k) for k in keys))
    """

    def __init__(self, max_streams: int = 4) -> None:
        if max_streams < 1:
            raise ValueError("max_streams must be at least 1")
        self.max_streams = max_streams
        self._semaphore = asyncio.Semaphore(max_streams)
        self._open = 0

    @property
    def open_streams(self) -> int:
        return self._open

    @asynccontextmanager
    async def open(self, opener: Callable[[], Awaitable[FileStream]]) -> AsyncIterator[FileStream]:
        """Wait for a free slot, open a stream and release it on exit."""
        async with self._semaphore:
            stream = await opener()
            self._open += 1
            try:
                yield stream
            finally:
                self._open -= 1
                await stream.release()
