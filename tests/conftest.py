"""Pytest configuration and shared fixtures.

Organization:
    - Environment: keep tests away from real credentials and endpoints
    - Settings Fixtures: cache isolation for the lru_cache loaders
"""

from __future__ import annotations

import os

import pytest

# Ensure tests never pick up real credentials or reach a keychain/CLI
os.environ.setdefault("STORAGE_AUTH_KEYCHAIN_ENABLED", "false")
os.environ.setdefault("STORAGE_AUTH_CLI_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

for _var in (
    "STORAGE_API_KEY",
    "STORAGE_API_URL",
    "STORAGE_PROJECT_ID",
    "STORAGE_PROVIDER",
    "STORAGE_CONTAINER",
    "STORAGE_AZURE_ACCOUNT_KEY",
    "STORAGE_AZURE_CONNECTION_STRING",
    "STORAGE_AZURE_SAS_TOKEN",
):
    os.environ.pop(_var, None)


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clear_settings_caches():
    """Clear cached settings before and after each test."""
    from storage_gateway.core.settings import clear_all_caches

    clear_all_caches()
    yield
    clear_all_caches()
