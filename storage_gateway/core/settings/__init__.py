"""Modular Pydantic Settings v2 configuration.

Settings are split by concern (storage, credentials, logging), read from
environment variables and an optional ``.env`` file, frozen after
validation, and cached by the loaders below.

    from storage_gateway.core.settings import get_storage_settings

    settings = get_storage_settings()
    print(settings.provider)

Configuration precedence (highest to lowest):
    1. init kwargs (testing/overrides)
    2. Environment variables
    3. .env file
"""

from __future__ import annotations

from .credentials import CredentialSettings
from .loader import (
    clear_all_caches,
    get_credential_settings,
    get_logging_settings,
    get_storage_settings,
)
from .logs import LoggingSettings
from .storage import StorageProviderType, StorageSettings

__all__ = [
    "CredentialSettings",
    "LoggingSettings",
    "StorageProviderType",
    "StorageSettings",
    "clear_all_caches",
    "get_credential_settings",
    "get_logging_settings",
    "get_storage_settings",
]
