"""Unit tests for syncing files between two storage services."""

from __future__ import annotations

from datetime import UTC, datetime
import os
from unittest.mock import AsyncMock, patch

import pytest

from storage_gateway.core.settings.storage import StorageSettings
from storage_gateway.infra.storage.backends.local import LocalBackend
from storage_gateway.infra.storage.backends.protocol import FileRecord, UploadRequest, Visibility
from storage_gateway.infra.storage.exceptions import StorageFileNotFoundError
from storage_gateway.infra.storage.operations.sync import (
    ConflictResolution,
    SyncAction,
    SyncDirection,
    SyncFilter,
    SyncOptions,
    SyncPhase,
    get_sync_status,
    should_copy,
    sync_storage,
    verify_synced_file,
)
from storage_gateway.infra.storage.service import StorageService


def _settings(root) -> StorageSettings:
    return StorageSettings(provider="local", local_root=root, signing_secret="sync-secret")


@pytest.fixture
async def source(tmp_path):
    settings = _settings(tmp_path / "src")
    service = StorageService(settings, backend=LocalBackend(settings))
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
async def destination(tmp_path):
    settings = _settings(tmp_path / "dst")
    service = StorageService(settings, backend=LocalBackend(settings))
    await service.startup()
    yield service
    await service.shutdown()


async def _put(service: StorageService, external_id: str, key: str, content: bytes, **kwargs) -> None:
    await service.upload_file(UploadRequest(external_id=external_id, key=key, buffer=content, **kwargs))


def _touch(service: StorageService, key: str, timestamp: int) -> None:
    path = service.settings.local_root / key
    os.utime(path, (timestamp, timestamp))


async def _read(service: StorageService, key: str) -> bytes:
    async with await service.get_file_stream(key) as stream:
        return await stream.read()


@pytest.mark.unit
class TestShouldCopy:
    """Test conflict resolution decisions."""

    def _record(self, size: int, modified: int | None = None) -> FileRecord:
        return FileRecord(
            key="k",
            content_type="text/plain",
            actual_size=size,
            last_modified=datetime.fromtimestamp(modified, tz=UTC) if modified else None,
        )

    def test_skip_and_overwrite(self):
        """Test skip never copies and overwrite always does."""
        a, b = self._record(1), self._record(2)
        assert not should_copy(a, b, ConflictResolution.SKIP)
        assert should_copy(a, b, ConflictResolution.OVERWRITE)

    def test_newest_wins(self):
        """Test only a strictly newer source wins; missing times count as oldest."""
        assert should_copy(self._record(1, 2000), self._record(1, 1000), ConflictResolution.NEWEST_WINS)
        assert not should_copy(self._record(1, 1000), self._record(1, 1000), ConflictResolution.NEWEST_WINS)
        assert not should_copy(self._record(1), self._record(1, 1000), ConflictResolution.NEWEST_WINS)

    def test_largest_wins_accepts_plain_strings(self):
        """Test the policy may be given by its string value."""
        assert should_copy(self._record(5), self._record(3), "largest-wins")
        assert not should_copy(self._record(3), self._record(3), "largest-wins")


@pytest.mark.unit
class TestSyncOneWay:
    """Test copying source files into the destination."""

    @pytest.mark.asyncio
    async def test_copies_content_and_provenance(self, source, destination):
        """Test copies keep key, content type and metadata and record their origin."""
        await _put(source, "a", "docs/a.txt", b"alpha", metadata={"owner": "ops"})
        await _put(source, "b", "docs/b.txt", b"beta")

        result = await sync_storage(source, destination)

        assert result.success
        assert result.summary.scanned == 2
        assert result.summary.copied == 2
        assert await _read(destination, "docs/a.txt") == b"alpha"

        copied = await destination.find_file_by_external_id("a")
        assert copied.key == "docs/a.txt"
        assert copied.content_type == "text/plain"
        assert copied.metadata["owner"] == "ops"
        assert copied.metadata["_synced_from"] == "local"
        assert copied.metadata["_original_key"] == "docs/a.txt"
        assert copied.metadata["_original_size"] == "5"
        assert "_synced_at" in copied.metadata

    @pytest.mark.asyncio
    async def test_public_visibility_carried_over(self, source, destination):
        """Test a public source file stays public in the destination."""
        await _put(source, "pub", "img/p.png", b"png", visibility=Visibility.PUBLIC)

        await sync_storage(source, destination)

        status = await destination.get_file_visibility("img/p.png")
        assert status.visibility == Visibility.PUBLIC
        copied = await destination.find_file("img/p.png")
        assert copied.metadata["_original_visibility"] == "public"

    @pytest.mark.asyncio
    async def test_dry_run_copies_nothing(self, source, destination):
        """Test a dry run reports copies without writing them."""
        await _put(source, "a", "docs/a.txt", b"alpha")

        result = await sync_storage(source, destination, SyncOptions(dry_run=True))

        assert result.summary.copied == 1
        assert result.details[0].action == SyncAction.COPIED
        assert await destination.find_file_by_external_id("a") is None

    @pytest.mark.asyncio
    async def test_existing_file_skipped_by_default(self, source, destination):
        """Test the default policy leaves existing destination files alone."""
        await _put(source, "a", "docs/a.txt", b"new")
        await _put(destination, "a", "docs/a.txt", b"old")

        result = await sync_storage(source, destination)

        assert result.summary.skipped == 1
        assert result.details[0].reason
        assert await _read(destination, "docs/a.txt") == b"old"

    @pytest.mark.asyncio
    async def test_overwrite_replaces_existing(self, source, destination):
        """Test overwrite copies over an existing destination file."""
        await _put(source, "a", "docs/a.txt", b"new")
        await _put(destination, "a", "docs/a.txt", b"old")

        result = await sync_storage(source, destination, SyncOptions(conflict_resolution=ConflictResolution.OVERWRITE))

        assert result.summary.copied == 1
        assert await _read(destination, "docs/a.txt") == b"new"

    @pytest.mark.asyncio
    async def test_newest_wins_uses_modification_time(self, source, destination):
        """Test newest-wins copies only when the source is newer."""
        await _put(source, "a", "docs/a.txt", b"source")
        await _put(destination, "a", "docs/a.txt", b"destination")
        options = SyncOptions(conflict_resolution=ConflictResolution.NEWEST_WINS)

        _touch(source, "docs/a.txt", 1_000)
        _touch(destination, "docs/a.txt", 2_000)
        assert (await sync_storage(source, destination, options)).summary.skipped == 1

        _touch(source, "docs/a.txt", 3_000)
        assert (await sync_storage(source, destination, options)).summary.copied == 1
        assert await _read(destination, "docs/a.txt") == b"source"

    @pytest.mark.asyncio
    async def test_filter_limits_scan(self, source, destination):
        """Test only files under the filter prefix are synced."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        await _put(source, "b", "img/b.png", b"png")

        result = await sync_storage(source, destination, SyncOptions(filter=SyncFilter(prefix="docs/")))

        assert result.summary.scanned == 1
        assert await destination.find_file("img/b.png") is None

    @pytest.mark.asyncio
    async def test_progress_and_file_callbacks(self, source, destination):
        """Test progress is reported per phase and after every batch."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        await _put(source, "b", "docs/b.txt", b"beta")
        progress, completed = [], []

        await sync_storage(
            source,
            destination,
            SyncOptions(batch_size=1, on_progress=progress.append, on_file_complete=completed.append),
        )

        assert [p.phase for p in progress] == [
            SyncPhase.SCANNING,
            SyncPhase.SYNCING,
            SyncPhase.SYNCING,
            SyncPhase.SYNCING,
            SyncPhase.COMPLETE,
        ]
        assert [p.processed_files for p in progress] == [0, 0, 1, 2, 2]
        assert progress[-1].copied_files == 2
        assert {c.external_id for c in completed} == {"a", "b"}


@pytest.mark.unit
class TestSyncCleanup:
    """Test two-way sync and orphan deletion."""

    @pytest.mark.asyncio
    async def test_two_way_copies_back(self, source, destination):
        """Test destination-only files are copied into the source."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        await _put(destination, "b", "docs/b.txt", b"beta")

        result = await sync_storage(source, destination, SyncOptions(direction=SyncDirection.TWO_WAY))

        assert result.summary.copied == 2
        back = await source.find_file_by_external_id("b")
        assert back is not None
        assert back.metadata["_synced_from"] == "local"
        assert await destination.find_file_by_external_id("a") is not None

    @pytest.mark.asyncio
    async def test_delete_orphaned(self, source, destination):
        """Test destination-only files are deleted in one-way mode."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        await _put(destination, "orphan", "docs/orphan.txt", b"x")

        result = await sync_storage(source, destination, SyncOptions(delete_orphaned=True))

        assert result.summary.deleted == 1
        assert await destination.find_file_by_external_id("orphan") is None

    @pytest.mark.asyncio
    async def test_delete_orphaned_dry_run_keeps_files(self, source, destination):
        """Test a dry run only reports orphan deletions."""
        await _put(destination, "orphan", "docs/orphan.txt", b"x")

        result = await sync_storage(source, destination, SyncOptions(delete_orphaned=True, dry_run=True))

        assert result.summary.deleted == 1
        assert await destination.find_file_by_external_id("orphan") is not None


@pytest.mark.unit
class TestSyncErrors:
    """Test per-file failures."""

    @pytest.mark.asyncio
    async def test_copy_failure_reported_not_raised(self, source, destination):
        """Test a failing read becomes an error result and an on_error call."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        errors = []

        with patch.object(source, "get_file_stream", AsyncMock(side_effect=StorageFileNotFoundError("gone"))):
            result = await sync_storage(source, destination, SyncOptions(on_error=errors.append))

        assert not result.success
        assert result.summary.errors == 1
        assert result.details[0].action == SyncAction.ERROR
        assert result.details[0].error == "gone"
        assert errors[0].phase == "copy"
        assert errors[0].external_id == "a"


@pytest.mark.unit
class TestSyncInspection:
    """Test status comparison and post-sync verification."""

    @pytest.mark.asyncio
    async def test_status_counts(self, source, destination):
        """Test files are split into source-only, destination-only and shared."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        await _put(source, "b", "docs/b.txt", b"beta")
        await _put(destination, "b", "docs/b.txt", b"beta-changed")
        await _put(destination, "c", "docs/c.txt", b"gamma")

        status = await get_sync_status(source, destination)

        assert status.source_files == 2
        assert status.dest_files == 2
        assert status.source_only == 1
        assert status.dest_only == 1
        assert status.in_both == 1
        assert [c.external_id for c in status.conflicts] == ["b"]
        assert status.conflicts[0].source_size == 4

    @pytest.mark.asyncio
    async def test_verify_after_sync(self, source, destination):
        """Test a synced file verifies cleanly."""
        await _put(source, "a", "docs/a.txt", b"alpha", metadata={"owner": "ops"})
        await sync_storage(source, destination)

        verification = await verify_synced_file("a", source, destination)

        assert verification.matched, verification.differences

    @pytest.mark.asyncio
    async def test_verify_reports_differences(self, source, destination):
        """Test unsynced copies are flagged."""
        await _put(source, "a", "docs/a.txt", b"alpha")
        await _put(destination, "a", "docs/a.txt", b"al")

        verification = await verify_synced_file("a", source, destination)

        assert not verification.matched
        assert "Size mismatch: 5 bytes != 2 bytes" in verification.differences
        assert "Missing sync metadata in destination file" in verification.differences

    @pytest.mark.asyncio
    async def test_verify_missing_file(self, source, destination):
        """Test a file missing on one side never matches."""
        await _put(source, "a", "docs/a.txt", b"alpha")

        verification = await verify_synced_file("a", source, destination)

        assert not verification.matched
