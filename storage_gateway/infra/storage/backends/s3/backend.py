"""S3-compatible storage backend implementation.

Implements the StorageBackend protocol for AWS S3 and S3-compatible
services (DigitalOcean Spaces, Wasabi, Backblaze B2, Cloudflare R2, custom
endpoints) using aioboto3.

Keys are the identity here. External ids live in object metadata
(``external-id``), so lookups by external id scan the bucket and HEAD each
object.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from storage_gateway.infra.storage.exceptions import (
    StorageFileNotFoundError,
    StorageNotConfiguredError,
    StorageUploadError,
    map_boto_error,
)
from storage_gateway.infra.storage.operations.download import (
    CancellationScope,
    FileStream,
    build_range_header,
    parse_content_range,
)
from storage_gateway.infra.storage.operations.listing import (
    SEARCH_FETCH_LIMIT,
    list_records,
    search_records,
)
from storage_gateway.infra.storage.operations.upload import iter_upload_source, prepare_upload
from storage_gateway.infra.storage.operations.visibility import (
    acl_grants_public,
    build_public_url,
    visibility_failure,
)
from storage_gateway.infra.storage.path import filename_from_key, infer_content_type

from ..protocol import (
    ContentDisposition,
    FileRecord,
    ListFilesOptions,
    ListFilesResult,
    SearchField,
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
    from collections.abc import AsyncIterator, Mapping

    from storage_gateway.core.settings.storage import StorageSettings

logger = logging.getLogger(__name__)

EXTERNAL_ID_METADATA_KEYS = ("external-id", "external_id")
_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
_ACL_DISABLED_CODES = frozenset({"AccessControlListNotSupported", "InvalidRequest"})
# Parallel HEAD requests when enriching listing results
_HEAD_CONCURRENCY = 10


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class S3Backend:
    """S3-compatible storage backend.

    Attributes:
        settings: Storage configuration settings
        backend_name: Name identifier for this backend ("s3")
        is_ready: Whether backend is initialized

    Example:
        backend = S3Backend(settings)
        await backend.startup()
        result = await backend.upload_file(UploadRequest(external_id="a1", buffer=b"data"))
        await backend.shutdown()
    """

    def __init__(self, settings: StorageSettings, client: Any | None = None) -> None:
        """Initialize S3 backend.

        Args:
            settings: Storage settings with S3 configuration
            client: Pre-built S3 client (tests); skips session creation

        Raises:
            StorageNotConfiguredError: If required settings are missing
        """
        missing = settings.missing_settings()
        if missing:
            msg = f"S3 backend not configured. Missing: {', '.join(missing)}"
            raise StorageNotConfiguredError(msg, metadata={"missing": missing})

        self.settings = settings
        self.bucket = cast("str", settings.bucket)
        self._session = aioboto3.Session() if client is None else None
        self._client = client
        self._client_context: Any = None

    @property
    def backend_name(self) -> str:
        return "s3"

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    # ========================================================================
    # Lifecycle Management
    # ========================================================================

    async def startup(self) -> None:
        """Initialize S3 client and connection pool."""
        if self._client is not None:
            logger.debug("S3 backend already initialized")
            return

        logger.info(
            "Initializing S3 backend",
            extra={
                "provider": self.settings.provider,
                "bucket": self.bucket,
                "endpoint": self.settings.effective_endpoint,
                "region": self.settings.effective_region,
            },
        )

        boto_config = Config(
            retries={
                "max_attempts": self.settings.max_retries,
                "mode": self.settings.retry_mode,
            },
            connect_timeout=self.settings.timeout,
            read_timeout=self.settings.timeout,
            max_pool_connections=self.settings.max_pool_connections,
        )

        try:
            assert self._session is not None
            self._client_context = self._session.client(
                "s3",
                **self.settings.get_boto3_config(),
                config=boto_config,
            )
            self._client = await self._client_context.__aenter__()
        except (BotoCoreError, ClientError, ValueError) as e:
            self._client_context = None
            logger.exception("Failed to initialize S3 backend", extra={"error": str(e)})
            raise StorageNotConfiguredError(
                f"Failed to initialize S3 backend: {e}",
                metadata={"bucket": self.bucket},
            ) from e

        logger.info("S3 backend initialized successfully")

    async def shutdown(self) -> None:
        """Shutdown S3 client gracefully."""
        if self._client_context is None:
            self._client = None
            logger.debug("S3 backend not initialized, nothing to shutdown")
            return

        logger.info("Shutting down S3 backend")
        try:
            await self._client_context.__aexit__(None, None, None)
        finally:
            self._client = None
            self._client_context = None

    async def health_check(self) -> bool:
        """Check S3 connectivity and credentials with HEAD on the bucket."""
        if self._client is None:
            return False
        try:
            await self._client.head_bucket(Bucket=self.bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(
                "S3 health check failed",
                extra={"error": str(e), "bucket": self.bucket},
            )
            return False

    def _ensure_client(self) -> Any:
        if self._client is None:
            msg = "S3 backend not initialized. Call startup() first."
            raise StorageNotConfiguredError(msg)
        return self._client

    def _public_url(self, key: str) -> str | None:
        return build_public_url(
            key,
            cdn_url=self.settings.cdn_url,
            public_base_url=self.settings.public_base_url,
            endpoint=self.settings.effective_endpoint,
            bucket=self.bucket,
            region=self.settings.effective_region,
        )

    # ========================================================================
    # Record conversion
    # ========================================================================

    def _record_from_head(self, key: str, head: Mapping[str, Any]) -> FileRecord:
        metadata = {str(k): str(v) for k, v in (head.get("Metadata") or {}).items()}
        external_id = next(
            (metadata[name] for name in EXTERNAL_ID_METADATA_KEYS if metadata.get(name)),
            None,
        )
        visibility = metadata.get("visibility")
        return FileRecord(
            key=key,
            content_type=head.get("ContentType") or infer_content_type(key),
            external_id=external_id,
            actual_size=head.get("ContentLength", 0),
            metadata=metadata,
            visibility=Visibility(visibility) if visibility in set(Visibility) else None,
            last_modified=head.get("LastModified"),
            url=self._public_url(key),
            etag=(head.get("ETag") or "").strip('"') or None,
        )

    def _record_from_listing(self, item: Mapping[str, Any]) -> FileRecord:
        key = item["Key"]
        return FileRecord(
            key=key,
            content_type=infer_content_type(key),
            actual_size=item.get("Size", 0),
            last_modified=item.get("LastModified"),
            url=self._public_url(key),
            etag=(item.get("ETag") or "").strip('"') or None,
        )

    # ========================================================================
    # Upload / Delete
    # ========================================================================

    async def _read_body(self, request: UploadRequest) -> bytes:
        if request.buffer is not None:
            return request.buffer
        if request.file_path is not None:
            return await asyncio.to_thread(Path(request.file_path).read_bytes)
        chunks = [
            chunk
            async for chunk in iter_upload_source(request, self.settings.streaming_chunk_size)
        ]
        return b"".join(chunks)

    async def upload_file(self, request: UploadRequest) -> UploadResult:
        """Upload an object with ``put_object``.

        The external id, original filename and requested visibility are
        stored as object metadata. Public requests apply the ``public-read``
        canned ACL.

        Raises:
            StorageProtocolError: If the source invariants are violated
            StorageUploadError: If the read or the upload fails
        """
        client = self._ensure_client()
        prepared = await prepare_upload(request, self.settings.key_namespace)

        try:
            body = await self._read_body(request)
        except OSError as e:
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: read failed: {e}",
                metadata={"filename": prepared.filename, "key": prepared.key, "step": "read"},
            ) from e

        metadata = {
            **prepared.metadata,
            "external-id": request.external_id,
            "original-filename": prepared.filename,
        }
        extra_args: dict[str, Any] = {
            "ContentType": prepared.content_type,
            "Metadata": metadata,
        }
        public = request.visibility == Visibility.PUBLIC
        if public:
            extra_args["ACL"] = "public-read"

        try:
            response = await client.put_object(
                Bucket=self.bucket,
                Key=prepared.key,
                Body=body,
                **extra_args,
            )
        except ClientError as e:
            mapped = map_boto_error(e, operation="upload", key=prepared.key)
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: {mapped.message}",
                metadata={"filename": prepared.filename, "key": prepared.key, **mapped.extra},
            ) from e
        except BotoCoreError as e:
            mapped = map_boto_error(e, operation="upload", key=prepared.key)
            raise StorageUploadError(
                f"Failed to upload {prepared.filename}: {mapped.message}",
                metadata={"filename": prepared.filename, "key": prepared.key, **mapped.extra},
            ) from e

        logger.info(
            "Object uploaded to S3",
            extra={
                "key": prepared.key,
                "bucket": self.bucket,
                "size_bytes": len(body),
                "content_type": prepared.content_type,
                "public": public,
            },
        )

        public_url = self._public_url(prepared.key)
        return UploadResult(
            external_id=request.external_id,
            key=prepared.key,
            url=public_url,
            size=len(body),
            content_type=prepared.content_type,
            visibility=request.visibility,
            actual_visibility=Visibility.PUBLIC if public else Visibility.PRIVATE,
            public_url=public_url if public else None,
            metadata=metadata,
            etag=(response.get("ETag") or "").strip('"') or None,
        )

    async def delete_file(self, key: str) -> None:
        """Delete an object.

        Raises:
            StorageFileNotFoundError: If the object does not exist
        """
        await self._require(key)
        client = self._ensure_client()
        try:
            await client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise map_boto_error(e, operation="delete", key=key) from e
        logger.info("Object deleted from S3", extra={"key": key, "bucket": self.bucket})

    async def delete_file_by_external_id(self, external_id: str) -> None:
        record = await self._require_external(external_id)
        await self.delete_file(record.key)

    # ========================================================================
    # Lookup
    # ========================================================================

    async def find_file(self, key: str) -> FileRecord | None:
        client = self._ensure_client()
        try:
            head = await client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise map_boto_error(e, operation="find", key=key) from e
        except BotoCoreError as e:
            raise map_boto_error(e, operation="find", key=key) from e
        return self._record_from_head(key, head)

    async def _require(self, key: str) -> FileRecord:
        record = await self.find_file(key)
        if record is None:
            raise StorageFileNotFoundError(f"File with key {key} not found", metadata={"key": key})
        return record

    async def find_file_by_external_id(self, external_id: str) -> FileRecord | None:
        """Scan objects and HEAD each one until the external id matches."""
        async for item in self._iter_objects(limit=self.settings.list_max_records):
            record = await self.find_file(item["Key"])
            if record is not None and record.external_id == external_id:
                return record
        return None

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
        """Presign a GET with the requested Content-Disposition."""
        await self._require(key)
        client = self._ensure_client()
        expires_in = ttl or self.settings.presigned_url_expiry_seconds
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "ResponseContentDisposition": f'{disposition.value}; filename="{filename_from_key(key)}"',
        }
        try:
            url = await client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise map_boto_error(e, operation="generate_presigned_url", key=key) from e

        logger.debug(
            "Generated presigned download URL",
            extra={"key": key, "bucket": self.bucket, "expires_in": expires_in},
        )
        return cast("str", url)

    async def get_file_url_by_external_id(
        self,
        external_id: str,
        ttl: int | None = None,
        disposition: ContentDisposition = ContentDisposition.ATTACHMENT,
    ) -> str:
        record = await self._require_external(external_id)
        return await self.get_file_url(record.key, ttl, disposition)

    async def open_stream(self, key: str, options: StreamOptions) -> FileStream:
        """Open a (ranged) stream with ``get_object``."""
        client = self._ensure_client()
        range_header = build_range_header(options.start, options.end)
        scope = CancellationScope(options.timeout, options.cancel_event, operation="stream", target=key)
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if range_header:
            kwargs["Range"] = range_header

        try:
            response = await scope.run(client.get_object(**kwargs))
        except (BotoCoreError, ClientError) as e:
            raise map_boto_error(e, operation="stream", key=key) from e

        body = response["Body"]
        chunk_size = options.chunk_size

        async def _chunks() -> AsyncIterator[bytes]:
            while chunk := await body.read(chunk_size):
                yield bytes(chunk)

        async def _release() -> None:
            result = body.close()
            if inspect.isawaitable(result):
                await result

        content_range = parse_content_range(response.get("ContentRange"))
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if status is None:
            status = 206 if content_range else 200

        return FileStream(
            key=key,
            chunks=_chunks(),
            release=_release,
            status_code=status,
            content_length=response.get("ContentLength"),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
            etag=(response.get("ETag") or "").strip('"') or None,
            accepts_ranges=(response.get("AcceptRanges") or "").lower() == "bytes",
            content_range=content_range if status == 206 else None,
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

    async def _iter_objects(
        self,
        prefix: str = "",
        limit: int | None = None,
    ) -> AsyncIterator[Mapping[str, Any]]:
        """Page through ``list_objects_v2`` with continuation tokens."""
        client = self._ensure_client()
        token: str | None = None
        seen = 0
        while True:
            kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": 1000}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                response = await client.list_objects_v2(**kwargs)
            except (BotoCoreError, ClientError) as e:
                raise map_boto_error(e, operation="list", key=prefix or None) from e

            for item in response.get("Contents", []):
                if limit is not None and seen >= limit:
                    return
                seen += 1
                yield item

            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not token:
                return

    async def _fetch_superset(self, bound: int, prefix: str = "") -> tuple[list[FileRecord], bool]:
        records = [
            self._record_from_listing(item)
            async for item in self._iter_objects(prefix, limit=bound + 1)
        ]
        truncated = len(records) > bound
        return records[:bound], truncated

    async def _enrich(self, records: list[FileRecord]) -> list[FileRecord]:
        """Replace listing records with HEAD records (metadata, content type)."""
        semaphore = asyncio.Semaphore(_HEAD_CONCURRENCY)

        async def _head(record: FileRecord) -> FileRecord:
            async with semaphore:
                return await self.find_file(record.key) or record

        return list(await asyncio.gather(*(_head(r) for r in records)))

    @staticmethod
    def _needs_metadata(options: ListFilesOptions | SearchFilesOptions) -> bool:
        if any(
            (
                options.external_id_prefix,
                options.external_id_pattern,
                options.external_ids is not None,
                options.content_type,
                options.content_type_prefix,
                options.metadata,
                options.has_metadata,
            )
        ):
            return True
        if options.sort_by in {"external_id", "contentType"}:
            return True
        if isinstance(options, SearchFilesOptions) and options.query:
            return any(
                SearchField(f) in {SearchField.EXTERNAL_ID, SearchField.METADATA, SearchField.CONTENT_TYPE}
                for f in options.search_fields
            )
        return False

    async def list_files(self, options: ListFilesOptions) -> ListFilesResult:
        """List with native ``Prefix`` narrowing; HEAD only when filters need metadata."""
        records, truncated = await self._fetch_superset(
            self.settings.list_max_records, options.prefix or ""
        )
        if self._needs_metadata(options):
            records = await self._enrich(records)
        return list_records(records, options, truncated=truncated)

    async def search_files(self, options: SearchFilesOptions) -> SearchFilesResult:
        records, truncated = await self._fetch_superset(SEARCH_FETCH_LIMIT)
        if self._needs_metadata(options):
            records = await self._enrich(records)
        return search_records(records, options, truncated=truncated)

    # ========================================================================
    # Visibility (ACL)
    # ========================================================================

    async def set_visibility(self, key: str, visibility: Visibility) -> VisibilityResult:
        """Apply ``public-read`` or ``private`` canned ACLs."""
        visibility = Visibility(visibility)
        if await self.find_file(key) is None:
            return visibility_failure(visibility, f"File with key {key} not found")

        acl = "private" if visibility == Visibility.PRIVATE else "public-read"
        client = self._ensure_client()
        try:
            await client.put_object_acl(Bucket=self.bucket, Key=key, ACL=acl)
        except ClientError as e:
            if _error_code(e) in _ACL_DISABLED_CODES:
                return visibility_failure(
                    visibility,
                    "ACLs are disabled on this bucket. Use bucket policies for access control instead.",
                    aws_error_code=_error_code(e),
                )
            mapped = map_boto_error(e, operation="set_visibility", key=key)
            return visibility_failure(visibility, f"Failed to change file visibility: {mapped.message}")
        except BotoCoreError as e:
            mapped = map_boto_error(e, operation="set_visibility", key=key)
            return visibility_failure(visibility, f"Failed to change file visibility: {mapped.message}")

        logger.info("Object ACL updated in S3", extra={"key": key, "acl": acl})
        if visibility == Visibility.PRIVATE:
            return VisibilityResult(
                success=True,
                requested_visibility=visibility,
                actual_visibility=Visibility.PRIVATE,
                message="File is now private and requires authentication.",
            )
        return VisibilityResult(
            success=True,
            requested_visibility=visibility,
            actual_visibility=Visibility.PUBLIC,
            public_url=self._public_url(key),
            message="File is now publicly accessible via direct URL.",
            provider_specific={"acl_applied": True},
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
        """Read the object ACL; disabled ACLs report private and unchangeable."""
        await self._require(key)
        client = self._ensure_client()
        try:
            response = await client.get_object_acl(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _ACL_DISABLED_CODES:
                return VisibilityStatus(
                    visibility=Visibility.PRIVATE,
                    can_make_public=False,
                    can_make_private=False,
                    supports_temporary_access=True,
                    message="ACLs are disabled on this bucket. File visibility managed by bucket policies.",
                )
            raise map_boto_error(e, operation="get_visibility", key=key) from e
        except BotoCoreError as e:
            raise map_boto_error(e, operation="get_visibility", key=key) from e

        if acl_grants_public(response.get("Grants", [])):
            return VisibilityStatus(
                visibility=Visibility.PUBLIC,
                can_make_public=True,
                can_make_private=True,
                supports_temporary_access=True,
                public_url=self._public_url(key),
                message="File is publicly accessible via direct URL.",
            )
        return VisibilityStatus(
            visibility=Visibility.PRIVATE,
            can_make_public=True,
            can_make_private=True,
            supports_temporary_access=True,
            message="File is private. Make it public or use signed URLs for temporary access.",
        )

    async def get_visibility_by_external_id(self, external_id: str) -> VisibilityStatus:
        record = await self._require_external(external_id)
        return await self.get_visibility(record.key)


__all__ = ["S3Backend"]
