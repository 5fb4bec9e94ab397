"""Storage commands.

This module provides CLI commands over ``StorageService``:
- Configuration and health information
- Upload, delete, existence checks and signed URLs
- Listing with filters and free-text search
- Visibility inspection and changes
- Resumable downloads
"""

import json
import sys
from datetime import datetime
from pathlib import Path

import click

from storage_gateway.cli.utils import coro, error, format_bytes, header, info, success, warning
from storage_gateway.core.settings import get_storage_settings
from storage_gateway.infra.storage import (
    ContentDisposition,
    FileRecord,
    ListFilesOptions,
    SearchField,
    SearchFilesOptions,
    SortField,
    SortOrder,
    StorageError,
    StorageService,
    UploadRequest,
    Visibility,
    resume_download,
)


def _parse_metadata(pairs: tuple[str, ...]) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--meta")
        metadata[name.strip()] = value.strip()
    return metadata


def _print_records(files: list[FileRecord]) -> None:
    click.echo(f"\n{'Key':<48} {'External ID':<24} {'Size':<10} {'Last Modified':<20}")
    click.echo("-" * 104)
    for record in files:
        key = record.key if len(record.key) <= 46 else "..." + record.key[-43:]
        modified = record.last_modified
        modified_str = modified.strftime("%Y-%m-%d %H:%M:%S") if isinstance(modified, datetime) else "-"
        click.echo(
            f"{key:<48} {(record.external_id or '-')[:22]:<24} "
            f"{format_bytes(record.size):<10} {modified_str:<20}"
        )
    click.echo("-" * 104)


@click.group(name="storage")
def storage() -> None:
    """Storage management commands.

    Every command uses the provider selected by STORAGE_PROVIDER.
    """


@storage.command(name="info")
def info_cmd() -> None:
    """Show storage configuration.

    Secrets are reported as set/unset only.
    """
    try:
        settings = get_storage_settings()
    except ValueError as e:
        error(f"Invalid storage configuration: {e}")
        sys.exit(1)

    header("Storage Configuration")
    click.echo(f"\nProvider: {settings.provider.value}")
    click.echo(f"Key Namespace: {settings.key_namespace}")

    if settings.is_s3_compatible:
        click.echo(f"Bucket: {settings.bucket}")
        click.echo(f"Region: {settings.effective_region}")
        click.echo(f"Endpoint: {settings.effective_endpoint or 'AWS S3 (default)'}")
        if settings.access_key and settings.secret_key:
            success("Credentials: Static keys configured")
        else:
            info("Credentials: botocore default chain")
    elif settings.provider == "azure":
        click.echo(f"Container: {settings.container}")
        click.echo(f"Account URL: {settings.effective_azure_account_url or '(from connection string)'}")
        click.echo(f"SAS Signing: {'enabled' if settings.get_azure_account_key() else 'unavailable (no account key)'}")
    elif settings.provider == "local":
        click.echo(f"Root: {settings.local_root}")
        click.echo(f"Signing Secret: {'set' if settings.signing_secret else 'unset (per process)'}")
    else:
        click.echo(f"API URL: {settings.api_url or '(resolved at startup)'}")
        click.echo(f"API Prefix: {settings.api_prefix}")
        click.echo(f"Project ID: {settings.project_id or '(resolved at startup)'}")
        click.echo(f"API Key: {'set' if settings.api_key else '(resolved at startup)'}")

    click.echo(f"\nPresigned URL Expiry: {settings.presigned_url_expiry_seconds}s")
    click.echo(f"Listing Bound: {settings.list_max_records} records")

    missing = settings.missing_settings()
    if missing:
        warning(f"Missing settings: {', '.join(missing)}")
    else:
        success("Storage settings are complete")


@storage.command()
@coro
async def check() -> None:
    """Start the backend and run its health check."""
    try:
        async with StorageService() as service:
            healthy = await service.health_check()
    except StorageError as e:
        error(f"Storage startup failed: {e.message}")
        sys.exit(1)

    if healthy:
        success(f"Storage backend '{service.backend_name}' is healthy")
    else:
        error(f"Storage backend '{service.backend_name}' is unhealthy")
        sys.exit(1)


@storage.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--external-id", "-e", required=True, help="Caller-assigned identifier of the file")
@click.option("--key", type=str, help="Storage key (synthesized from the external id when omitted)")
@click.option("--content-type", type=str, help="MIME type (inferred from the filename when omitted)")
@click.option("--public", is_flag=True, help="Request public visibility")
@click.option("--meta", multiple=True, help="Metadata as KEY=VALUE (repeatable)")
@coro
async def upload(
    file: Path,
    external_id: str,
    key: str | None,
    content_type: str | None,
    public: bool,
    meta: tuple[str, ...],
) -> None:
    """Upload a file.

    Examples:
        storage-gateway storage upload invoice.pdf -e invoice-42
        storage-gateway storage upload logo.png -e logo --public --meta team=web
    """
    request = UploadRequest(
        external_id=external_id,
        file_path=file,
        key=key,
        content_type=content_type,
        metadata=_parse_metadata(meta),
        visibility=Visibility.PUBLIC if public else Visibility.PRIVATE,
    )
    info(f"Uploading {file.name} ({format_bytes(file.stat().st_size)})...")

    try:
        async with StorageService() as service:
            result = await service.upload_file(request)
    except StorageError as e:
        error(f"Upload failed: {e.message}")
        sys.exit(1)

    success(f"Uploaded {file.name} as {result.key}")
    if result.file_id:
        click.echo(f"File ID: {result.file_id}")
    click.echo(f"Size: {format_bytes(result.size)}")
    if result.actual_visibility != result.visibility:
        warning(f"Requested {result.visibility.value}, actual visibility is {result.actual_visibility.value}")
    if result.public_url:
        click.echo(f"Public URL: {result.public_url}")


@storage.command(name="list")
@click.argument("prefix", default="")
@click.option("--limit", type=int, default=100, help="Page size (default: 100, max 1000)")
@click.option("--offset", type=int, default=0, help="Records to skip")
@click.option(
    "--sort-by",
    type=click.Choice([f.value for f in SortField]),
    default=SortField.KEY.value,
)
@click.option("--order", type=click.Choice([o.value for o in SortOrder]), default="asc")
@click.option("--external-id", "external_ids", multiple=True, help="Only these external ids (repeatable)")
@click.option("--content-type", type=str, help="Exact content type")
@click.option("--pattern", type=str, help="Key glob (* and ?)")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@coro
async def list_files(
    prefix: str,
    limit: int,
    offset: int,
    sort_by: str,
    order: str,
    external_ids: tuple[str, ...],
    content_type: str | None,
    pattern: str | None,
    as_json: bool,
) -> None:
    """List files with optional prefix and filters.

    Examples:
        storage-gateway storage list
        storage-gateway storage list files/ --sort-by size --order desc
        storage-gateway storage list --pattern "*.pdf" --limit 20 --offset 20
    """
    options = ListFilesOptions(
        prefix=prefix or None,
        key_pattern=pattern,
        external_ids=external_ids or None,
        content_type=content_type,
        limit=limit,
        offset=offset,
        sort_by=SortField(sort_by),
        sort_order=SortOrder(order),
    )
    try:
        async with StorageService() as service:
            result = await service.list_files(options)
    except StorageError as e:
        error(f"Failed to list files: {e.message}")
        sys.exit(1)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "files": [r.to_dict() for r in result.files],
                    "total_count": result.total_count,
                    "has_more": result.has_more,
                    "next_offset": result.next_offset,
                    "truncated": result.truncated,
                },
                indent=2,
                default=str,
            )
        )
        return

    if not result.files:
        warning(f"No files found (prefix: '{prefix or 'root'}')")
        return

    header(f"Files {offset + 1}-{offset + len(result.files)} of {result.total_count}")
    _print_records(result.files)
    if result.has_more:
        info(f"More results: --offset {result.next_offset}")
    if result.truncated:
        warning("Listing hit the record bound; totals may be incomplete")


@storage.command()
@click.argument("query")
@click.option(
    "--field",
    "fields",
    multiple=True,
    type=click.Choice([f.value for f in SearchField]),
    help="Fields to search (repeatable, default: all)",
)
@click.option("--case-sensitive", is_flag=True)
@click.option("--exact", is_flag=True, help="Match whole field values")
@click.option("--limit", type=int, default=100)
@click.option("--offset", type=int, default=0)
@coro
async def search(
    query: str,
    fields: tuple[str, ...],
    case_sensitive: bool,
    exact: bool,
    limit: int,
    offset: int,
) -> None:
    """Search files by external id, filename, metadata, content type or key."""
    kwargs = {"search_fields": tuple(SearchField(f) for f in fields)} if fields else {}
    options = SearchFilesOptions(
        query=query,
        case_sensitive=case_sensitive,
        exact_match=exact,
        limit=limit,
        offset=offset,
        **kwargs,
    )
    try:
        async with StorageService() as service:
            result = await service.search_files(options)
    except StorageError as e:
        error(f"Search failed: {e.message}")
        sys.exit(1)

    if not result.files:
        warning(f"No files match '{query}'")
        return

    header(f"{result.total_count} match(es) for '{query}' ({result.search_time_ms or 0.0:.1f} ms)")
    _print_records(result.files)
    if result.has_more:
        info(f"More results: --offset {result.next_offset}")


@storage.command()
@click.argument("key")
@click.option("--by-external-id", is_flag=True, help="Treat KEY as an external id")
@click.option("--ttl", type=int, help="Seconds the URL stays valid (where the backend honors it)")
@click.option(
    "--disposition",
    type=click.Choice([d.value for d in ContentDisposition]),
    default=ContentDisposition.ATTACHMENT.value,
)
@coro
async def url(key: str, by_external_id: bool, ttl: int | None, disposition: str) -> None:
    """Print a time-limited download URL."""
    try:
        async with StorageService() as service:
            if by_external_id:
                signed = await service.get_file_url_by_external_id(key, ttl, disposition)
            else:
                signed = await service.get_file_url(key, ttl, disposition)
    except StorageError as e:
        error(f"Failed to get URL: {e.message}")
        sys.exit(1)
    click.echo(signed)


@storage.command()
@click.argument("key")
@click.option("--by-external-id", is_flag=True, help="Treat KEY as an external id")
@coro
async def exists(key: str, by_external_id: bool) -> None:
    """Exit 0 when the file exists, 1 otherwise."""
    try:
        async with StorageService() as service:
            found = (
                await service.file_exists_by_external_id(key)
                if by_external_id
                else await service.file_exists(key)
            )
    except StorageError as e:
        error(f"Lookup failed: {e.message}")
        sys.exit(2)

    if found:
        success(f"{key} exists")
    else:
        warning(f"{key} not found")
        sys.exit(1)


@storage.command()
@click.argument("key")
@click.option("--by-external-id", is_flag=True, help="Treat KEY as an external id")
@click.option("--yes", is_flag=True, help="Skip confirmation")
@coro
async def delete(key: str, by_external_id: bool, yes: bool) -> None:
    """Delete a file."""
    if not yes:
        click.confirm(f"Delete {key}?", abort=True)
    try:
        async with StorageService() as service:
            if by_external_id:
                await service.delete_file_by_external_id(key)
            else:
                await service.delete_file(key)
    except StorageError as e:
        error(f"Delete failed: {e.message}")
        sys.exit(1)
    success(f"Deleted {key}")


@storage.group(name="visibility")
def visibility() -> None:
    """Inspect or change file visibility."""


@visibility.command(name="get")
@click.argument("key")
@click.option("--by-external-id", is_flag=True, help="Treat KEY as an external id")
@coro
async def visibility_get(key: str, by_external_id: bool) -> None:
    """Show current visibility and supported changes."""
    try:
        async with StorageService() as service:
            status = (
                await service.get_file_visibility_by_external_id(key)
                if by_external_id
                else await service.get_file_visibility(key)
            )
    except StorageError as e:
        error(f"Failed to read visibility: {e.message}")
        sys.exit(1)

    click.echo(f"Visibility: {status.visibility.value}")
    click.echo(f"Can make public: {status.can_make_public}")
    click.echo(f"Can make private: {status.can_make_private}")
    click.echo(f"Temporary access: {status.supports_temporary_access}")
    if status.public_url:
        click.echo(f"Public URL: {status.public_url}")
    if status.message:
        info(status.message)


@visibility.command(name="set")
@click.argument("key")
@click.argument("level", type=click.Choice([v.value for v in Visibility]))
@click.option("--by-external-id", is_flag=True, help="Treat KEY as an external id")
@coro
async def visibility_set(key: str, level: str, by_external_id: bool) -> None:
    """Request a visibility change and report what actually applies."""
    try:
        async with StorageService() as service:
            result = (
                await service.set_file_visibility_by_external_id(key, level)
                if by_external_id
                else await service.set_file_visibility(key, level)
            )
    except StorageError as e:
        error(f"Failed to set visibility: {e.message}")
        sys.exit(1)

    if not result.success:
        error(result.message or "Visibility change failed")
        sys.exit(1)

    success(
        f"Requested {result.requested_visibility.value}, actual {result.actual_visibility.value}"
    )
    if result.public_url:
        click.echo(f"Public URL: {result.public_url}")
    if result.public_url_expires_at:
        click.echo(f"Expires: {result.public_url_expires_at.isoformat()}")
    if result.message:
        info(result.message)


@storage.command()
@click.argument("key")
@click.argument("dest", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--by-external-id", is_flag=True, help="Treat KEY as an external id")
@click.option("--resume", is_flag=True, help="Continue a partial download at DEST")
@click.option("--timeout", type=float, help="Seconds allowed for the whole transfer")
@coro
async def download(
    key: str,
    dest: Path,
    by_external_id: bool,
    resume: bool,
    timeout: float | None,
) -> None:
    """Download a file, optionally resuming a partial one.

    Examples:
        storage-gateway storage download files/backup.tar backup.tar
        storage-gateway storage download files/backup.tar backup.tar --resume
    """
    if dest.exists() and not resume:
        dest.unlink()

    try:
        async with StorageService() as service:
            written = await resume_download(
                service,
                key,
                dest,
                by_external_id=by_external_id,
                timeout=timeout,
            )
    except StorageError as e:
        error(f"Download failed: {e.message}")
        info("Re-run with --resume to continue from the partial file")
        sys.exit(1)

    if written == 0 and resume:
        success(f"{dest} is already complete")
    else:
        success(f"Downloaded {format_bytes(written)} to {dest}")
