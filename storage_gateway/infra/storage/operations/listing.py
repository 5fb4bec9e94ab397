"""Client-side listing and search over a fetched superset of records.

Backends differ in what they can filter and sort natively, so every backend
fetches a superset (narrowed only by what it supports) and hands it to this
pipeline:

    filter -> [text match] -> sort -> paginate

Features:
- Key, external id, filename and content type filters with ``*``/``?`` globs
- Size, creation and modification time windows
- Metadata equality and key presence filters
- Free-text search scoped to a set of fields
- Deterministic sort with a (file_id, key) tie-break
- Offset/limit pagination with ``has_more``/``next_offset``
"""

from __future__ import annotations

import json
import re
import time
from datetime import UTC, datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from storage_gateway.infra.storage.backends.protocol import (
    MAX_PAGE_LIMIT,
    FileRecord,
    ListFilesOptions,
    ListFilesResult,
    SearchField,
    SearchFilesOptions,
    SearchFilesResult,
    SortField,
    SortOrder,
)
from storage_gateway.infra.storage.exceptions import StorageValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# Superset bound used by free-text search regardless of listing settings
SEARCH_FETCH_LIMIT = 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``*``/``?`` glob into an anchored case-insensitive regex."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def glob_match(value: str | None, pattern: str) -> bool:
    """Match a value against a case-insensitive glob supporting ``*`` and ``?``."""
    if value is None:
        return False
    return _glob_regex(pattern).fullmatch(value) is not None


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _within(value: datetime | None, after: datetime | None, before: datetime | None) -> bool:
    if after is None and before is None:
        return True
    if value is None:
        return False
    value = _as_aware(value)
    if after is not None and value < _as_aware(after):
        return False
    return before is None or value <= _as_aware(before)


def _matches_filters(record: FileRecord, options: ListFilesOptions | SearchFilesOptions) -> bool:
    prefix = getattr(options, "prefix", None)
    if prefix and not record.key.startswith(prefix):
        return False

    key_pattern = getattr(options, "key_pattern", None)
    if key_pattern and not glob_match(record.key, key_pattern):
        return False

    external_id = record.external_id or ""
    if options.external_id_prefix and not external_id.startswith(options.external_id_prefix):
        return False
    if options.external_id_pattern and not glob_match(external_id, options.external_id_pattern):
        return False
    if options.external_ids is not None and external_id not in options.external_ids:
        return False

    content_type = record.content_type.lower()
    if options.content_type and content_type != options.content_type.lower():
        return False
    if options.content_type_prefix and not content_type.startswith(
        options.content_type_prefix.lower()
    ):
        return False

    if options.filename and options.filename.lower() not in record.filename.lower():
        return False
    if options.filename_pattern and not glob_match(record.filename, options.filename_pattern):
        return False

    if options.min_size is not None and record.size < options.min_size:
        return False
    if options.max_size is not None and record.size > options.max_size:
        return False

    if not _within(record.created_at, options.created_after, options.created_before):
        return False
    if not _within(record.last_modified, options.modified_after, options.modified_before):
        return False

    if options.metadata:
        for name, expected in options.metadata.items():
            if record.metadata.get(name) != expected:
                return False
    if options.has_metadata:
        for name in options.has_metadata:
            if name not in record.metadata:
                return False

    return True


def apply_filters(
    records: Iterable[FileRecord],
    options: ListFilesOptions | SearchFilesOptions,
) -> list[FileRecord]:
    """Keep the records that satisfy every filter set on ``options``.

    Unset filters are ignored. ``prefix`` and ``key_pattern`` only exist on
    listing options.
    """
    return [record for record in records if _matches_filters(record, options)]


def _field_text(record: FileRecord, search_field: SearchField) -> str:
    match search_field:
        case SearchField.EXTERNAL_ID:
            return record.external_id or ""
        case SearchField.FILENAME:
            return record.filename
        case SearchField.METADATA:
            return json.dumps(record.metadata, separators=(",", ":"), ensure_ascii=False)
        case SearchField.CONTENT_TYPE:
            return record.content_type
        case SearchField.KEY:
            return record.key
    return ""


def match_query(
    record: FileRecord,
    query: str,
    fields: Sequence[SearchField],
    case_sensitive: bool = False,
    exact_match: bool = False,
) -> bool:
    """Check whether any selected field of the record matches the query.

    Case sensitivity and exact-vs-substring matching are independent.
    An empty query matches every record.

    Example:
        ```python
        match_query(record, "invoice", [SearchField.FILENAME])
        # True for "Invoice-2024.pdf" (case-insensitive substring)
        ```
    """
    if not query:
        return True

    needle = query if case_sensitive else query.casefold()
    for search_field in fields:
        text = _field_text(record, SearchField(search_field))
        if not text:
            continue
        haystack = text if case_sensitive else text.casefold()
        if exact_match:
            if haystack == needle:
                return True
        elif needle in haystack:
            return True
    return False


def _sort_value(record: FileRecord, sort_by: SortField) -> Any:
    match sort_by:
        case SortField.KEY:
            return record.key
        case SortField.EXTERNAL_ID:
            return (record.external_id or "").casefold()
        case SortField.FILENAME:
            return record.filename.casefold()
        case SortField.SIZE:
            return record.size
        case SortField.LAST_MODIFIED:
            return _as_aware(record.last_modified or _EPOCH).timestamp()
        case SortField.CONTENT_TYPE:
            return record.content_type.casefold()
    return record.key


def sort_records(
    records: Iterable[FileRecord],
    sort_by: SortField = SortField.KEY,
    sort_order: SortOrder = SortOrder.ASC,
) -> list[FileRecord]:
    """Sort records by a field, breaking ties by file id then key.

    The tie-break is always ascending so repeated calls page identically.
    Missing values sort as empty strings or zero.
    """
    by_identity = sorted(records, key=lambda r: (r.file_id or "", r.key))
    return sorted(
        by_identity,
        key=lambda r: _sort_value(r, SortField(sort_by)),
        reverse=SortOrder(sort_order) == SortOrder.DESC,
    )


def normalize_page(offset: int, limit: int) -> tuple[int, int]:
    """Validate offset/limit and cap the limit.

    Raises:
        StorageValidationError: If offset is negative or limit is below 1
    """
    if offset < 0:
        raise StorageValidationError(
            f"offset must be >= 0, got {offset}", metadata={"offset": offset}
        )
    if limit < 1:
        raise StorageValidationError(f"limit must be >= 1, got {limit}", metadata={"limit": limit})
    return offset, min(limit, MAX_PAGE_LIMIT)


def paginate(
    records: Sequence[FileRecord],
    offset: int,
    limit: int,
    truncated: bool = False,
) -> ListFilesResult:
    """Slice one page out of filtered, sorted records.

    ``has_more`` is ``offset + limit < total_count``; ``next_offset`` is only
    set when there is more.
    """
    offset, limit = normalize_page(offset, limit)
    total = len(records)
    has_more = offset + limit < total
    return ListFilesResult(
        files=list(records[offset : offset + limit]),
        total_count=total,
        has_more=has_more,
        next_offset=offset + limit if has_more else None,
        truncated=truncated,
    )


def list_records(
    records: Iterable[FileRecord],
    options: ListFilesOptions,
    truncated: bool = False,
) -> ListFilesResult:
    """Run the listing pipeline: filter, sort, paginate."""
    started = time.perf_counter()
    normalize_page(options.offset, options.limit)
    filtered = apply_filters(records, options)
    ordered = sort_records(filtered, options.sort_by, options.sort_order)
    page = paginate(ordered, options.offset, options.limit, truncated=truncated)
    return ListFilesResult(
        files=page.files,
        total_count=page.total_count,
        has_more=page.has_more,
        next_offset=page.next_offset,
        truncated=truncated,
        search_time_ms=(time.perf_counter() - started) * 1000,
    )


def search_records(
    records: Iterable[FileRecord],
    options: SearchFilesOptions,
    truncated: bool = False,
) -> SearchFilesResult:
    """Run the search pipeline: filter, text match, sort, paginate."""
    started = time.perf_counter()
    normalize_page(options.offset, options.limit)
    fields = tuple(SearchField(f) for f in options.search_fields)
    matched = [
        record
        for record in apply_filters(records, options)
        if match_query(
            record,
            options.query,
            fields,
            case_sensitive=options.case_sensitive,
            exact_match=options.exact_match,
        )
    ]
    ordered = sort_records(matched, options.sort_by, options.sort_order)
    page = paginate(ordered, options.offset, options.limit, truncated=truncated)
    return SearchFilesResult(
        files=page.files,
        total_count=page.total_count,
        has_more=page.has_more,
        next_offset=page.next_offset,
        truncated=truncated,
        search_time_ms=(time.perf_counter() - started) * 1000,
        query=options.query,
        search_fields=fields,
    )
