"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the
process. Nothing here builds services; callers construct ``StorageService``
themselves and may pass settings explicitly.

Testing:
    In tests, clear the cache to force reload:
    get_storage_settings.cache_clear()

    Or override with custom values:
    settings = StorageSettings(provider="local", local_root=tmp_path)
"""

from __future__ import annotations

from functools import lru_cache

from .credentials import CredentialSettings
from .logs import LoggingSettings
from .storage import StorageSettings


@lru_cache(maxsize=1)
def get_storage_settings() -> StorageSettings:
    """Get cached storage settings.

    Returns:
        Validated and frozen StorageSettings instance.
    """
    return StorageSettings()


@lru_cache(maxsize=1)
def get_credential_settings() -> CredentialSettings:
    """Get cached credential resolution settings.

    Returns:
        Validated and frozen CredentialSettings instance.
    """
    return CredentialSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings.

    Returns:
        Validated and frozen LoggingSettings instance.
    """
    return LoggingSettings()


def clear_all_caches() -> None:
    """Clear every cached settings instance (used by tests and the CLI)."""
    get_storage_settings.cache_clear()
    get_credential_settings.cache_clear()
    get_logging_settings.cache_clear()
