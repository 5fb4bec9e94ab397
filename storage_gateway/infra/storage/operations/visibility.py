"""Visibility results shared by all backends.

Requested and actual visibility are always reported separately:

- The descriptor backend has no object-level ACL. It records the requested
  preference and reports ``actual_visibility=private`` with a message. That
  is a success, not a failure.
- S3 maps visibility onto canned ACLs and reports the public URL.
- The local backend serves public files from a base URL, optionally behind
  HMAC-signed expiring links (``temporary-public``).
- Azure Blob Storage has no per-blob ACL. Public requests mint a long-lived
  read SAS URL and report ``temporary-public``.

Failures never raise from ``set_visibility``; they return ``success=False``
with the conservative ``private`` as the actual state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from storage_gateway.infra.storage.backends.protocol import (
    Visibility,
    VisibilityResult,
    VisibilityStatus,
)
from storage_gateway.infra.storage.exceptions import StorageError, StorageFileNotFoundError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable, Mapping

logger = logging.getLogger(__name__)

DESCRIPTOR_PUBLIC_MESSAGE = (
    "File visibility preference set to public. "
    "Note: the storage API uses authenticated access for all files."
)
DESCRIPTOR_PRIVATE_MESSAGE = "File visibility set to private."
DESCRIPTOR_STATUS_MESSAGE = (
    "Files are private and served through short-lived signed URLs."
)

_PUBLIC_GROUP_URIS = frozenset(
    {
        "http://acs.amazonaws.com/groups/global/AllUsers",
        "http://acs.amazonaws.com/groups/global/AuthenticatedUsers",
    }
)


def visibility_failure(
    requested: Visibility,
    message: str,
    **provider_specific: Any,
) -> VisibilityResult:
    """Build a failed result; the actual visibility is assumed private."""
    return VisibilityResult(
        success=False,
        requested_visibility=requested,
        actual_visibility=Visibility.PRIVATE,
        message=message,
        provider_specific=provider_specific,
    )


def descriptor_visibility_result(requested: Visibility) -> VisibilityResult:
    """Result for a backend that only records the preference."""
    requested = Visibility(requested)
    return VisibilityResult(
        success=True,
        requested_visibility=requested,
        actual_visibility=Visibility.PRIVATE,
        message=(
            DESCRIPTOR_PRIVATE_MESSAGE
            if requested == Visibility.PRIVATE
            else DESCRIPTOR_PUBLIC_MESSAGE
        ),
        provider_specific={"metadata_updated": True, "requires_authentication": True},
    )


def descriptor_visibility_status() -> VisibilityStatus:
    return VisibilityStatus(
        visibility=Visibility.PRIVATE,
        can_make_public=False,
        can_make_private=True,
        supports_temporary_access=True,
        message=DESCRIPTOR_STATUS_MESSAGE,
    )


def build_public_url(
    key: str,
    *,
    cdn_url: str | None = None,
    public_base_url: str | None = None,
    endpoint: str | None = None,
    bucket: str | None = None,
    region: str = "us-east-1",
) -> str | None:
    """Build the public URL of an object.

    Precedence: CDN, explicit public base URL, path-style custom endpoint,
    then the AWS virtual-hosted URL. Returns None when no bucket is known
    and no base URL is configured.
    """
    if cdn_url:
        return f"{cdn_url.rstrip('/')}/{key}"
    if public_base_url:
        return f"{public_base_url.rstrip('/')}/{key}"
    if not bucket:
        return None
    if endpoint:
        return f"{endpoint.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


def acl_grants_public(grants: Iterable[Mapping[str, Any]]) -> bool:
    """Check whether an ACL grants READ to a public group."""
    for grant in grants:
        grantee = grant.get("Grantee", {})
        if grantee.get("Type") != "Group" or grantee.get("URI") not in _PUBLIC_GROUP_URIS:
            continue
        if grant.get("Permission") in {"READ", "FULL_CONTROL"}:
            return True
    return False


async def guarded_set_visibility(
    call: Awaitable[VisibilityResult],
    requested: Visibility,
    target: str,
) -> VisibilityResult:
    """Await a backend visibility change, turning storage errors into failed results."""
    try:
        return await call
    except StorageFileNotFoundError:
        return visibility_failure(requested, f"File {target} not found")
    except StorageError as e:
        logger.warning(
            "Failed to set file visibility",
            extra={"target": target, "requested": str(requested), "error": e.message},
        )
        return visibility_failure(requested, f"Failed to set file visibility: {e.message}")
