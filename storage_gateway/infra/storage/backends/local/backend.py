"""Local filesystem storage backend.

Stores objects under ``local_root`` by key. Each object has a JSON sidecar
under ``<local_root>/.meta/<key>.json`` carrying the external id, content
type, visibility preference, caller metadata and creation time.

Download links are ``{public_base_url}/{key}`` (or a ``file://`` URL) with
an HMAC-SHA256 signed expiry, verified with ``verify_local_url``. All
filesystem work runs in worker threads.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
import secrets
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlencode

from storage_gateway.infra.storage.exceptions import (
    StorageFileNotFoundError,
    StorageUploadError,
    StorageValidationError,
)
from storage_gateway.infra.storage.operations.download import (
    CancellationScope,
    FileStream,
    build_range_header,
)
from storage_gateway.infra.storage.operations.listing import (
    SEARCH_FETCH_LIMIT,
    list_records,
    search_records,
)
from storage_gateway.infra.storage.operations.upload import iter_upload_source, prepare_upload
from storage_gateway.infra.storage.operations.visibility import visibility_failure
from storage_gateway.infra.storage.path import infer_content_type, validate_key

from ..protocol import (
    ContentDisposition,
    ContentRange,
    FileRecord,
    ListFilesOptions,
    ListFilesResult,
    SearchFilesOptions,
    SearchFilesResult,
    StreamOptions,
    UploadRequest,
    UploadResult,
    Visibility,
    VisibilityResult,
    VisibilityStatus,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from storage_gateway.core.settings.storage import StorageSettings

logger = logging.getLogger(__name__)

META_DIR = ".meta"
_SIDECAR_SUFFIX = ".json"


# ============================================================================
# Signed links
# ============================================================================


def _signature(key: str, expires: int, secret: str, disposition: str = "") -> str:
    message = f"{key}\n{expires}\n{disposition}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_local_url(
    base_url: str,
    key: str,
    secret: str,
    expires_at: int,
    disposition: ContentDisposition | None = None,
) -> str:
    """Build a link to ``key`` valid until the ``expires_at`` unix timestamp."""
    disposition_value = disposition.value if disposition else ""
    params = {
        "expires": expires_at,
        "signature": _signature(key, expires_at, secret, disposition_value),
    }
    if disposition_value:
        params["disposition"] = disposition_value
    return f"{base_url.rstrip('/')}/{quote(key)}?{urlencode(params)}"


def verify_local_url(
    key: str,
    expires: int | str,
    signature: str,
    secret: str,
    *,
    disposition: str = "",
    now: float | None = None,
) -> bool:
    """Check a link signature and that it has not expired."""
    try:
        expires_at = int(expires)
    except (TypeError, ValueError):
        return False
    if expires_at < (time.time() if now is None else now):
        return False
    expected = _signature(key, expires_at, secret, disposition)
    return hmac.compare_digest(expected, signature)


# ============================================================================
# Backend
# ============================================================================


class LocalBackend:
    """Filesystem storage backend for development and tests.

    Attributes:
        settings: Storage configuration settings
        root: Resolved storage root
        backend_name: Name identifier for this backend ("local")
    """

    def __init__(self, settings: StorageSettings) -> None:
        self.settings = settings
        self.root = Path(settings.local_root).expanduser().resolve()
        if settings.signing_secret is not None:
            self._secret = settings.signing_secret.get_secret_value()
        else:
            # Links only outlive the process when a secret is configured
            self._secret = secrets.token_hex(32)
        self._ready = False

    @property
    def backend_name(self) -> str:
        return "local"

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def startup(self) -> None:
        await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        if self.settings.signing_secret is None:
            logger.warning("No STORAGE_SIGNING_SECRET set; signed local links expire with the process")
        self._ready = True
        logger.info("Local storage backend initialized", extra={"root": str(self.root)})

    async def shutdown(self) -> None:
        self._ready = False

    async def health_check(self) -> bool:
        return await asyncio.to_thread(lambda: self.root.is_dir() and os.access(self.root, os.W_OK))

    # ========================================================================
    # Paths and sidecars
    # ========================================================================

    def _path(self, key: str) -> Path:
        try:
            validate_key(key)
        except ValueError as e:
            raise StorageValidationError(str(e), metadata={"key": key}) from e
        if key.split("/", 1)[0] == META_DIR:
            raise StorageValidationError(f"Key cannot start with {META_DIR}/", metadata={"key": key})
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root):
            raise StorageValidationError("Key resolves outside the storage root", metadata={"key": key})
        return path

    def _sidecar(self, key: str) -> Path:
        return self.root / META_DIR / f"{key}{_SIDECAR_SUFFIX}"

    def _read_sidecar(self, key: str) -> dict[str, Any]:
        try:
            return json.loads(self._sidecar(key).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable metadata sidecar", extra={"key": key, "error": str(e)})
            return {}

    def _write_sidecar(self, key: str, data: dict[str, Any]) -> None:
        sidecar = self._sidecar(key)
        sidecar.parent.mkdir(parents=True, exist_ok=True)
        sidecar.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")

    def _load_record(self, key: str) -> FileRecord | None:
        path = self._path(key)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        meta = self._read_sidecar(key)
        created = meta.get("created_at")
        visibility = meta.get("visibility")
        return FileRecord(
            key=key,
            content_type=meta.get("content_type") or infer_content_type(key),
            external_id=meta.get("external_id"),
            actual_size=stat.st_size,
            metadata=dict(meta.get("metadata") or {}),
            visibility=Visibility(visibility) if visibility in set(Visibility) else None,
            created_at=datetime.fromisoformat(created) if created else None,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            url=self._public_url(key) if visibility == Visibility.PUBLIC else None,
        )

    def _walk(self, prefix: str = "", limit: int | None = None) -> tuple[list[FileRecord], bool]:
        records: list[FileRecord] = []
        if not self.root.is_dir():
            return records, False
        for dirpath, dirnames, filenames in os.walk(self.root):
            if Path(dirpath) == self.root:
                dirnames[:] = [d for d in dirnames if d != META_DIR]
            dirnames.sort()
            for name in sorted(filenames):
                if name.startswith(".") and name.endswith(".part"):
                    continue
                key = (Path(dirpath) / name).relative_to(self.root).as_posix()
                if prefix and not key.startswith(prefix):
                    continue
                if limit is not None and len(records) >= limit:
                    return records, True
                record = self._load_record(key)
                if record is not None:
                    records.append(record)
        return records, False

    def _public_url(self, key: str) -> str:
        base = self.settings.public_base_url or self.root.as_uri()
        return f"{base.rstrip('/')}/{quote(key)}"

    def _signed_url(self, key: str, ttl: int, disposition: ContentDisposition | None = None) -> str:
        base = self.settings.public_base_url or self.root.as_uri()
        return sign_local_url(base, key, self._secret, int(time.time()) + ttl, disposition)

    # ========================================================================
    # Upload / Delete
    # ========================================================================

    async def upload_file(self, request: UploadRequest) -> UploadResult:
        """Write content to a temporary file, then move it into place."""
        prepared = await prepare_upload(request, self.settings.key_namespace)
        path = self._path(prepared.key)
        tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.part")

        written = 0
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            handle = await asyncio.to_thread(tmp.open, "wb")
            try:
                async for chunk in iter_upload_source(request, self.settings.streaming_chunk_size):
                    await asyncio.to_thread(handle.write, chunk)
                    written += len(chunk)
            finally:
                await asyncio.to_thread(handle.close)
            await asyncio.to_thread(tmp.replace, path)
            await asyncio.to_thread(
                self._write_sidecar,
                prepared.key,
                {
                    "external_id": request.external_id,
                    "content_type": prepared.content_type,
                    "visibility": Visibility(request.visibility).value,
                    "original_filename": prepared.filename,
                    "metadata": prepared.metadata,
                    "created_at": datetime.now(UTC).isoformat(),
                },
            )
        except OSError as e:
            await asyncio.to_thread(tmp.unlink, missing_ok=True)
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: write failed: {e}",
                metadata={"filename": prepared.filename, "key": prepared.key, "step": "write"},
            ) from e

        logger.info(
            "File stored locally",
            extra={"key": prepared.key, "size_bytes": written, "content_type": prepared.content_type},
        )
        public = request.visibility == Visibility.PUBLIC
        return UploadResult(
            external_id=request.external_id,
            key=prepared.key,
            url=self._public_url(prepared.key) if public else None,
            size=written,
            content_type=prepared.content_type,
            visibility=request.visibility,
            actual_visibility=Visibility(request.visibility),
            public_url=self._public_url(prepared.key) if public else None,
            metadata=prepared.metadata,
        )

    async def delete_file(self, key: str) -> None:
        await self._require(key)

        def _delete() -> None:
            self._path(key).unlink()
            self._sidecar(key).unlink(missing_ok=True)

        await asyncio.to_thread(_delete)
        logger.info("Local file deleted", extra={"key": key})

    async def delete_file_by_external_id(self, external_id: str) -> None:
        record = await self._require_external(external_id)
        await self.delete_file(record.key)

    # ========================================================================
    # Lookup
    # ========================================================================

    async def find_file(self, key: str) -> FileRecord | None:
        return await asyncio.to_thread(self._load_record, key)

    async def find_file_by_external_id(self, external_id: str) -> FileRecord | None:
        records, _ = await asyncio.to_thread(self._walk, "", self.settings.list_max_records)
        return next((r for r in records if r.external_id == external_id), None)

    async def _require(self, key: str) -> FileRecord:
        record = await self.find_file(key)
        if record is None:
            raise StorageFileNotFoundError(f"File with key {key} not found", metadata={"key": key})
        return record

    async def _require_external(self, external_id: str) -> FileRecord:
        record = await self.find_file_by_external_id(external_id)
        if record is None:
            raise StorageFileNotFoundError(
                f"File with external_id {external_id} not found",
                metadata={"external_id": external_id},
            )
        return record

    # ========================================================================
    # URLs and Streams
    # ========================================================================

    async def get_file_url(
        self,
        key: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        await self._require(key)
        return self._signed_url(key, ttl or self.settings.presigned_url_expiry_seconds, disposition)

    async def get_file_url_by_external_id(
        self,
        external_id: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        record = await self._require_external(external_id)
        return await self.get_file_url(record.key, ttl, disposition)

    async def open_stream(self, key: str, options: StreamOptions) -> FileStream:
        """Open a file slice; a start past the end is a 416-style validation error."""
        build_range_header(options.start, options.end)
        record = await self._require(key)
        size = record.size
        start = options.start or 0
        if options.is_range and start >= size:
            raise StorageValidationError(
                f"Range start {start} is beyond the end of {key} ({size} bytes)",
                metadata={"key": key, "start": start, "size": size, "http_status": 416},
            )
        end = size - 1 if options.end is None else min(options.end, size - 1)
        length = max(end - start + 1, 0)

        path = self._path(key)
        scope = CancellationScope(options.timeout, options.cancel_event, operation="stream", target=key)
        handle = await asyncio.to_thread(path.open, "rb")
        chunk_size = options.chunk_size

        async def _chunks() -> AsyncIterator[bytes]:
            await asyncio.to_thread(handle.seek, start)
            remaining = length
            while remaining > 0:
                chunk = await asyncio.to_thread(handle.read, min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

        async def _release() -> None:
            await asyncio.to_thread(handle.close)

        partial = options.is_range
        return FileStream(
            key=key,
            chunks=_chunks(),
            release=_release,
            status_code=206 if partial else 200,
            content_length=length,
            content_type=record.content_type,
            last_modified=record.last_modified,
            accepts_ranges=True,
            content_range=ContentRange(start=start, end=end, total=size) if partial else None,
            scope=scope,
        )

    async def open_stream_by_external_id(
        self,
        external_id: str,
        options: StreamOptions,
    ) -> FileStream:
        record = await self._require_external(external_id)
        return await self.open_stream(record.key, options)

    # ========================================================================
    # Listing and Search
    # ========================================================================

    async def list_files(self, options: ListFilesOptions) -> ListFilesResult:
        records, truncated = await asyncio.to_thread(
            self._walk, options.prefix or "", self.settings.list_max_records
        )
        return list_records(records, options, truncated=truncated)

    async def search_files(self, options: SearchFilesOptions) -> SearchFilesResult:
        records, truncated = await asyncio.to_thread(self._walk, "", SEARCH_FETCH_LIMIT)
        return search_records(records, options, truncated=truncated)

    # ========================================================================
    # Visibility
    # ========================================================================

    async def set_visibility(self, key: str, visibility: Visibility) -> VisibilityResult:
        """Store the preference in the sidecar; the actual state follows it."""
        visibility = Visibility(visibility)
        if await self.find_file(key) is None:
            return visibility_failure(visibility, f"File with key {key} not found")

        def _update() -> None:
            meta = self._read_sidecar(key)
            meta["visibility"] = visibility.value
            self._write_sidecar(key, meta)

        try:
            await asyncio.to_thread(_update)
        except OSError as e:
            return visibility_failure(visibility, f"Failed to change file visibility: {e}")

        if visibility == Visibility.PRIVATE:
            return VisibilityResult(
                success=True,
                requested_visibility=visibility,
                actual_visibility=Visibility.PRIVATE,
                message="File is now private and served through signed links.",
            )

        ttl = self.settings.temporary_public_ttl
        if visibility == Visibility.TEMPORARY_PUBLIC or ttl:
            ttl = ttl or self.settings.presigned_url_expiry_seconds
            return VisibilityResult(
                success=True,
                requested_visibility=visibility,
                actual_visibility=Visibility.TEMPORARY_PUBLIC,
                public_url=self._signed_url(key, ttl),
                public_url_expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
                message=f"File is publicly accessible through a signed link for {ttl} seconds.",
                provider_specific={"signed": True},
            )

        return VisibilityResult(
            success=True,
            requested_visibility=visibility,
            actual_visibility=Visibility.PUBLIC,
            public_url=self._public_url(key),
            message="File is now publicly accessible via direct URL.",
        )

    async def set_visibility_by_external_id(
        self,
        external_id: str,
        visibility: Visibility,
    ) -> VisibilityResult:
        record = await self.find_file_by_external_id(external_id)
        if record is None:
            return visibility_failure(visibility, f"File with external_id {external_id} not found")
        return await self.set_visibility(record.key, visibility)

    async def get_visibility(self, key: str) -> VisibilityStatus:
        record = await self._require(key)
        current = record.visibility or Visibility.PRIVATE
        public = current == Visibility.PUBLIC
        return VisibilityStatus(
            visibility=current,
            can_make_public=True,
            can_make_private=True,
            supports_temporary_access=True,
            public_url=self._public_url(key) if public else None,
            message=f"File is {current.value}.",
        )

    async def get_visibility_by_external_id(self, external_id: str) -> VisibilityStatus:
        record = await self._require_external(external_id)
        return await self.get_visibility(record.key)
