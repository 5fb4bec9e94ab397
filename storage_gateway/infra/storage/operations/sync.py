"""Copy files between two storage services.

``sync_storage`` scans the source, copies each file to the destination in
concurrent batches and optionally cleans up afterwards:

- one-way: source files are copied to the destination
- two-way: files only present in the destination are copied back
- ``delete_orphaned`` (one-way only): destination files missing from the
  source are deleted

Files are matched by external id, falling back to the key for records
without one. Copies carry the source metadata plus provenance entries
(``_synced_from``, ``_synced_at`` and ``_original_*``) and keep the key,
content type and public visibility.

Example:
    async with StorageService(local) as src, StorageService(remote) as dst:
        result = await sync_storage(src, dst, SyncOptions(conflict_resolution="newest-wins"))
        print(result.summary.copied)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
import logging
import time
from typing import TYPE_CHECKING

from storage_gateway.infra.storage.backends.protocol import (
    ListFilesOptions,
    UploadRequest,
    Visibility,
)
from storage_gateway.infra.storage.exceptions import StorageError

if TYPE_CHECKING:
    from storage_gateway.infra.storage.backends.protocol import FileRecord
    from storage_gateway.infra.storage.service import StorageService

logger = logging.getLogger(__name__)

SCAN_PAGE_SIZE = 100
SYNC_METADATA_PREFIXES = ("_synced", "_original")


class SyncDirection(StrEnum):
    ONE_WAY = "one-way"
    TWO_WAY = "two-way"


class ConflictResolution(StrEnum):
    """What to do when a file already exists in the destination."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    NEWEST_WINS = "newest-wins"
    LARGEST_WINS = "largest-wins"


class SyncPhase(StrEnum):
    SCANNING = "scanning"
    SYNCING = "syncing"
    CLEANING = "cleaning"
    COMPLETE = "complete"


class SyncAction(StrEnum):
    COPIED = "copied"
    SKIPPED = "skipped"
    DELETED = "deleted"
    ERROR = "error"


@dataclass(frozen=True)
class SyncFilter:
    """Which source files take part in a sync."""

    prefix: str | None = None
    external_ids: tuple[str, ...] | None = None
    content_type: str | None = None
    content_type_prefix: str | None = None
    min_size: int | None = None
    max_size: int | None = None

    def to_list_options(self, offset: int, limit: int) -> ListFilesOptions:
        return ListFilesOptions(
            prefix=self.prefix,
            external_ids=self.external_ids,
            content_type=self.content_type,
            content_type_prefix=self.content_type_prefix,
            min_size=self.min_size,
            max_size=self.max_size,
            offset=offset,
            limit=limit,
        )


@dataclass(frozen=True)
class SyncProgress:
    phase: SyncPhase
    total_files: int
    processed_files: int
    copied_files: int
    skipped_files: int
    deleted_files: int
    errors: int
    current_file: str | None = None


@dataclass(frozen=True)
class SyncFileResult:
    external_id: str
    key: str
    action: SyncAction
    reason: str | None = None
    error: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class SyncError:
    """A per-file failure reported through ``on_error``.

    ``phase`` is one of "copy" or "delete".
    """

    external_id: str
    error: str
    phase: str
    key: str | None = None


@dataclass
class SyncSummary:
    scanned: int = 0
    copied: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: int = 0
    duration_ms: float = 0.0


@dataclass
class SyncResult:
    success: bool = True
    summary: SyncSummary = field(default_factory=SyncSummary)
    details: list[SyncFileResult] = field(default_factory=list)

    def record(self, file_result: SyncFileResult) -> None:
        self.details.append(file_result)
        match file_result.action:
            case SyncAction.COPIED:
                self.summary.copied += 1
            case SyncAction.SKIPPED:
                self.summary.skipped += 1
            case SyncAction.DELETED:
                self.summary.deleted += 1
            case SyncAction.ERROR:
                self.summary.errors += 1


@dataclass(frozen=True)
class SyncOptions:
    """How ``sync_storage`` runs.

    Attributes:
        direction: One-way, or two-way to also copy destination-only files back
        conflict_resolution: Policy for files present on both sides
        dry_run: Report what would happen without copying or deleting
        delete_orphaned: Delete destination-only files (one-way only)
        batch_size: Files copied concurrently per batch
        filter: Restricts the scanned files on both sides
        on_progress: Called at each phase change and after every batch
        on_error: Called for every per-file failure
        on_file_complete: Called with every per-file result
    """

    direction: SyncDirection = SyncDirection.ONE_WAY
    conflict_resolution: ConflictResolution = ConflictResolution.SKIP
    dry_run: bool = False
    delete_orphaned: bool = False
    batch_size: int = 10
    filter: SyncFilter = field(default_factory=SyncFilter)
    on_progress: Callable[[SyncProgress], None] | None = None
    on_error: Callable[[SyncError], None] | None = None
    on_file_complete: Callable[[SyncFileResult], None] | None = None


@dataclass(frozen=True)
class SyncVerification:
    matched: bool
    differences: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SyncConflict:
    external_id: str
    source_size: int
    dest_size: int
    source_modified: datetime | None = None
    dest_modified: datetime | None = None


@dataclass(frozen=True)
class SyncStatus:
    source_files: int
    dest_files: int
    source_only: int
    dest_only: int
    in_both: int
    conflicts: list[SyncConflict] = field(default_factory=list)


# ============================================================================
# Helpers
# ============================================================================


def _identity(record: FileRecord) -> str:
    return record.external_id or record.key


async def _find(service: StorageService, record: FileRecord) -> FileRecord | None:
    if record.external_id:
        return await service.find_file_by_external_id(record.external_id)
    return await service.find_file(record.key)


def _timestamp(record: FileRecord) -> float:
    return record.last_modified.timestamp() if record.last_modified else 0.0


def should_copy(source: FileRecord, destination: FileRecord, resolution: ConflictResolution) -> bool:
    """Decide whether ``source`` replaces an existing ``destination`` file."""
    match ConflictResolution(resolution):
        case ConflictResolution.SKIP:
            return False
        case ConflictResolution.OVERWRITE:
            return True
        case ConflictResolution.NEWEST_WINS:
            return _timestamp(source) > _timestamp(destination)
        case ConflictResolution.LARGEST_WINS:
            return source.size > destination.size


async def list_all_files(service: StorageService, sync_filter: SyncFilter | None = None) -> list[FileRecord]:
    """Page through every file matching ``sync_filter``."""
    sync_filter = sync_filter or SyncFilter()
    records: list[FileRecord] = []
    offset = 0
    while True:
        page = await service.list_files(sync_filter.to_list_options(offset, SCAN_PAGE_SIZE))
        records.extend(page.files)
        if not page.has_more:
            return records
        offset = page.next_offset if page.next_offset is not None else offset + SCAN_PAGE_SIZE


def _sync_metadata(record: FileRecord, source: StorageService, visibility: Visibility) -> dict[str, str]:
    metadata = {
        **record.metadata,
        "_synced_from": source.backend_name or source.settings.provider.value,
        "_synced_at": datetime.now(UTC).isoformat(),
        "_original_size": str(record.size),
        "_original_content_type": record.content_type,
        "_original_key": record.key,
        "_original_visibility": visibility.value,
    }
    if record.last_modified:
        metadata["_original_last_modified"] = record.last_modified.isoformat()
    if record.etag:
        metadata["_original_etag"] = record.etag
    if record.url:
        metadata["_original_url"] = record.url
    return metadata


async def _source_visibility(source: StorageService, record: FileRecord) -> Visibility:
    try:
        status = await source.get_file_visibility(record.key)
    except StorageError as e:
        logger.debug("Source visibility unavailable, copying as private", extra={"key": record.key, "error": str(e)})
        return Visibility.PRIVATE
    return Visibility.PUBLIC if status.visibility == Visibility.PUBLIC else Visibility.PRIVATE


async def copy_file(record: FileRecord, source: StorageService, destination: StorageService) -> None:
    """Copy one file with its key, content type, metadata and visibility.

    Raises:
        StorageError: If reading from the source or writing to the destination fails
    """
    async with await source.get_file_stream(record.key) as stream:
        content = await stream.read()

    visibility = await _source_visibility(source, record)
    result = await destination.upload_file(
        UploadRequest(
            external_id=_identity(record),
            buffer=content,
            key=record.key,
            filename=record.filename,
            content_type=record.content_type,
            metadata=_sync_metadata(record, source, visibility),
            visibility=visibility,
        )
    )
    logger.info(
        "File synced",
        extra={
            "key": result.key,
            "external_id": result.external_id,
            "size_bytes": result.size,
            "destination": destination.backend_name,
        },
    )

    # Backends may ignore the upload visibility, so it is set again.
    if visibility == Visibility.PUBLIC and result.actual_visibility != Visibility.PUBLIC:
        applied = await destination.set_file_visibility(result.key, Visibility.PUBLIC)
        if not applied.success:
            logger.warning(
                "Could not set public visibility on synced file",
                extra={"key": result.key, "error": applied.message},
            )


async def _sync_one(
    record: FileRecord,
    source: StorageService,
    destination: StorageService,
    options: SyncOptions,
) -> SyncFileResult:
    external_id = _identity(record)
    try:
        existing = await _find(destination, record)
        if existing is not None and not should_copy(record, existing, options.conflict_resolution):
            return SyncFileResult(
                external_id=external_id,
                key=record.key,
                action=SyncAction.SKIPPED,
                reason=f"File exists in destination and conflict resolution is {options.conflict_resolution}",
                size=record.size,
            )
        if not options.dry_run:
            await copy_file(record, source, destination)
    except StorageError as e:
        if options.on_error:
            options.on_error(SyncError(external_id=external_id, key=record.key, error=e.message, phase="copy"))
        return SyncFileResult(
            external_id=external_id,
            key=record.key,
            action=SyncAction.ERROR,
            error=e.message,
            size=record.size,
        )
    return SyncFileResult(external_id=external_id, key=record.key, action=SyncAction.COPIED, size=record.size)


async def _delete_orphan(record: FileRecord, destination: StorageService, options: SyncOptions) -> SyncFileResult:
    external_id = _identity(record)
    if not options.dry_run:
        try:
            if record.external_id:
                await destination.delete_file_by_external_id(record.external_id)
            else:
                await destination.delete_file(record.key)
        except StorageError as e:
            if options.on_error:
                options.on_error(SyncError(external_id=external_id, key=record.key, error=e.message, phase="delete"))
            return SyncFileResult(
                external_id=external_id,
                key=record.key,
                action=SyncAction.ERROR,
                error=e.message,
                size=record.size,
            )
    return SyncFileResult(external_id=external_id, key=record.key, action=SyncAction.DELETED, size=record.size)


def _progress(
    result: SyncResult,
    phase: SyncPhase,
    total: int,
    processed: int,
    current: str | None = None,
) -> SyncProgress:
    return SyncProgress(
        phase=phase,
        total_files=total,
        processed_files=processed,
        copied_files=result.summary.copied,
        skipped_files=result.summary.skipped,
        deleted_files=result.summary.deleted,
        errors=result.summary.errors,
        current_file=current,
    )


# ============================================================================
# Public API
# ============================================================================


async def sync_storage(
    source: StorageService,
    destination: StorageService,
    options: SyncOptions | None = None,
) -> SyncResult:
    """Synchronize files from ``source`` into ``destination``.

    Per-file storage failures are reported in the result and through
    ``on_error``; they never abort the run. A failure while scanning
    either side propagates.

    Returns:
        Summary counts and one detail entry per file handled

    Raises:
        StorageError: If listing the source or destination fails
    """
    options = options or SyncOptions()
    direction = SyncDirection(options.direction)
    batch_size = max(options.batch_size, 1)
    started = time.perf_counter()
    result = SyncResult()

    def report(progress: SyncProgress) -> None:
        if options.on_progress:
            options.on_progress(progress)

    def complete(file_result: SyncFileResult) -> None:
        result.record(file_result)
        if options.on_file_complete:
            options.on_file_complete(file_result)

    report(_progress(result, SyncPhase.SCANNING, 0, 0))
    source_files = await list_all_files(source, options.filter)
    total = len(source_files)
    result.summary.scanned = total

    logger.info(
        "Starting storage sync",
        extra={
            "source": source.backend_name,
            "destination": destination.backend_name,
            "files": total,
            "direction": direction.value,
            "dry_run": options.dry_run,
        },
    )

    report(_progress(result, SyncPhase.SYNCING, total, 0))
    for start in range(0, total, batch_size):
        batch = source_files[start : start + batch_size]
        for file_result in await asyncio.gather(*(_sync_one(r, source, destination, options) for r in batch)):
            complete(file_result)
        report(_progress(result, SyncPhase.SYNCING, total, start + len(batch), _identity(batch[-1])))

    two_way = direction == SyncDirection.TWO_WAY
    if two_way or options.delete_orphaned:
        report(_progress(result, SyncPhase.CLEANING, total, total))
        source_ids = {_identity(r) for r in source_files}
        dest_only = [r for r in await list_all_files(destination, options.filter) if _identity(r) not in source_ids]
        for record in dest_only:
            if two_way:
                complete(await _sync_one(record, destination, source, options))
            else:
                complete(await _delete_orphan(record, destination, options))

    result.summary.duration_ms = (time.perf_counter() - started) * 1000
    result.success = result.summary.errors == 0
    report(_progress(result, SyncPhase.COMPLETE, total, total))

    logger.info(
        "Storage sync complete",
        extra={
            "copied": result.summary.copied,
            "skipped": result.summary.skipped,
            "deleted": result.summary.deleted,
            "errors": result.summary.errors,
            "duration_ms": round(result.summary.duration_ms, 2),
        },
    )
    return result


async def verify_synced_file(
    external_id: str,
    source: StorageService,
    destination: StorageService,
) -> SyncVerification:
    """Compare one synced file on both sides.

    Checks key, size, content type, visibility and caller metadata, and that
    the destination carries sync provenance.
    """
    source_file = await source.find_file_by_external_id(external_id)
    dest_file = await destination.find_file_by_external_id(external_id)
    if source_file is None or dest_file is None:
        return SyncVerification(False, ["File not found in one or both storages"])

    differences: list[str] = []
    if source_file.key != dest_file.key:
        differences.append(f'Key mismatch: "{source_file.key}" != "{dest_file.key}"')
    if source_file.size != dest_file.size:
        differences.append(f"Size mismatch: {source_file.size} bytes != {dest_file.size} bytes")
    if source_file.content_type != dest_file.content_type:
        differences.append(f'Content type mismatch: "{source_file.content_type}" != "{dest_file.content_type}"')

    try:
        source_visibility = await source.get_file_visibility(source_file.key)
        dest_visibility = await destination.get_file_visibility(dest_file.key)
    except StorageError as e:
        differences.append(f"Could not verify visibility: {e.message}")
    else:
        if source_visibility.visibility != dest_visibility.visibility:
            differences.append(
                f'Visibility mismatch: "{source_visibility.visibility}" != "{dest_visibility.visibility}"'
            )

    for name, value in source_file.metadata.items():
        # Visibility is compared above and may change after upload
        if name.startswith(SYNC_METADATA_PREFIXES) or name == "visibility":
            continue
        if dest_file.metadata.get(name) != value:
            differences.append(f'Metadata["{name}"] mismatch: "{value}" != "{dest_file.metadata.get(name)}"')

    if "_synced_from" not in dest_file.metadata:
        differences.append("Missing sync metadata in destination file")

    return SyncVerification(not differences, differences)


async def get_sync_status(
    source: StorageService,
    destination: StorageService,
    sync_filter: SyncFilter | None = None,
) -> SyncStatus:
    """Compare both sides without copying anything.

    A file present on both sides is a conflict when its size or
    modification time differs.
    """
    source_files = await list_all_files(source, sync_filter)
    dest_files = {_identity(r): r for r in await list_all_files(destination, sync_filter)}
    source_ids = {_identity(r) for r in source_files}

    conflicts = [
        SyncConflict(
            external_id=_identity(record),
            source_size=record.size,
            dest_size=other.size,
            source_modified=record.last_modified,
            dest_modified=other.last_modified,
        )
        for record in source_files
        if (other := dest_files.get(_identity(record))) is not None
        and (record.size != other.size or record.last_modified != other.last_modified)
    ]

    in_both = sum(1 for r in source_files if _identity(r) in dest_files)
    return SyncStatus(
        source_files=len(source_files),
        dest_files=len(dest_files),
        source_only=len(source_files) - in_both,
        dest_only=sum(1 for ident in dest_files if ident not in source_ids),
        in_both=in_both,
        conflicts=conflicts,
    )
