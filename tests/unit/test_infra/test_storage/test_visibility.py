"""Unit tests for requested vs. actual visibility reporting."""

from __future__ import annotations

import pytest

from storage_gateway.infra.storage.backends.protocol import Visibility, VisibilityResult
from storage_gateway.infra.storage.exceptions import (
    StorageFileNotFoundError,
    StoragePermissionError,
)
from storage_gateway.infra.storage.operations.visibility import (
    DESCRIPTOR_PUBLIC_MESSAGE,
    acl_grants_public,
    build_public_url,
    descriptor_visibility_result,
    descriptor_visibility_status,
    guarded_set_visibility,
    visibility_failure,
)

ALL_USERS = "http://acs.amazonaws.com/groups/global/AllUsers"


@pytest.mark.unit
class TestDescriptorVisibility:
    """Test results for backends that only record a preference."""

    @pytest.mark.parametrize("requested", [Visibility.PUBLIC, Visibility.TEMPORARY_PUBLIC])
    def test_public_requests_stay_private(self, requested):
        """Test public requests succeed while the actual state stays private."""
        result = descriptor_visibility_result(requested)
        assert result.success is True
        assert result.requested_visibility == requested
        assert result.actual_visibility == Visibility.PRIVATE
        assert result.message == DESCRIPTOR_PUBLIC_MESSAGE
        assert result.provider_specific["requires_authentication"] is True

    def test_private_request(self):
        """Test private requests get their own message."""
        result = descriptor_visibility_result(Visibility.PRIVATE)
        assert result.actual_visibility == Visibility.PRIVATE
        assert "private" in result.message

    def test_status(self):
        """Test the status advertises temporary access only."""
        status = descriptor_visibility_status()
        assert status.visibility == Visibility.PRIVATE
        assert (status.can_make_public, status.can_make_private) == (False, True)
        assert status.supports_temporary_access is True


@pytest.mark.unit
class TestPublicUrl:
    """Test public URL precedence."""

    def test_cdn_wins(self):
        """Test the CDN URL is preferred."""
        url = build_public_url(
            "a/b.png", cdn_url="https://cdn.test/", public_base_url="https://pub.test", bucket="bk"
        )
        assert url == "https://cdn.test/a/b.png"

    def test_public_base_url(self):
        """Test the explicit base URL comes next."""
        assert build_public_url("k", public_base_url="https://pub.test/") == "https://pub.test/k"

    def test_custom_endpoint_is_path_style(self):
        """Test S3-compatible endpoints use path-style URLs."""
        url = build_public_url("k", endpoint="http://localhost:9000/", bucket="bk")
        assert url == "http://localhost:9000/bk/k"

    def test_aws_virtual_hosted(self):
        """Test AWS URLs are virtual-hosted with the region."""
        url = build_public_url("k", bucket="bk", region="eu-west-1")
        assert url == "https://bk.s3.eu-west-1.amazonaws.com/k"

    def test_no_bucket(self):
        """Test nothing is built without a bucket or base URL."""
        assert build_public_url("k") is None


@pytest.mark.unit
class TestAclGrants:
    """Test ACL grant inspection."""

    def test_public_read(self):
        """Test a READ grant to AllUsers is public."""
        grants = [{"Grantee": {"Type": "Group", "URI": ALL_USERS}, "Permission": "READ"}]
        assert acl_grants_public(grants)

    def test_owner_only(self):
        """Test canonical user grants are not public."""
        grants = [{"Grantee": {"Type": "CanonicalUser", "ID": "abc"}, "Permission": "FULL_CONTROL"}]
        assert not acl_grants_public(grants)

    def test_public_write_only(self):
        """Test a WRITE-only public grant does not make content readable."""
        grants = [{"Grantee": {"Type": "Group", "URI": ALL_USERS}, "Permission": "WRITE"}]
        assert not acl_grants_public(grants)


@pytest.mark.unit
class TestGuardedSetVisibility:
    """Test that visibility changes never raise."""

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        """Test a successful result is returned unchanged."""
        expected = VisibilityResult(
            success=True,
            requested_visibility=Visibility.PUBLIC,
            actual_visibility=Visibility.PUBLIC,
            message="ok",
        )

        async def call():
            return expected

        assert await guarded_set_visibility(call(), Visibility.PUBLIC, "k") is expected

    @pytest.mark.asyncio
    async def test_not_found_becomes_failure(self):
        """Test a missing file is a failed result."""

        async def call():
            raise StorageFileNotFoundError("gone")

        result = await guarded_set_visibility(call(), Visibility.PUBLIC, "files/a.txt")
        assert result.success is False
        assert result.actual_visibility == Visibility.PRIVATE
        assert result.message == "File files/a.txt not found"

    @pytest.mark.asyncio
    async def test_storage_error_becomes_failure(self):
        """Test other storage errors are reported in the message."""

        async def call():
            raise StoragePermissionError("denied")

        result = await guarded_set_visibility(call(), Visibility.PRIVATE, "k")
        assert result.success is False
        assert result.message == "Failed to set file visibility: denied"

    def test_failure_keeps_provider_details(self):
        """Test failure results carry provider specifics."""
        result = visibility_failure(Visibility.PUBLIC, "nope", acl_disabled=True)
        assert result.provider_specific == {"acl_disabled": True}
