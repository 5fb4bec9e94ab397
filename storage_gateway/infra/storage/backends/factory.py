"""Backend factory: closed dispatch from provider type to backend."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from storage_gateway.core.settings.storage import S3_COMPATIBLE_PROVIDERS, StorageProviderType
from storage_gateway.infra.storage.exceptions import StorageNotConfiguredError

if TYPE_CHECKING:
    from storage_gateway.core.settings.storage import StorageSettings

    from .protocol import StorageBackend


def create_storage_backend(settings: StorageSettings, **backend_kwargs: Any) -> StorageBackend:
    """Factory function to create the backend for ``settings.provider``.

    Args:
        settings: Storage configuration settings
        **backend_kwargs: Passed to the backend constructor (injected
            transports, resolvers, a pre-built S3 client or Azure container client)

    Returns:
        Backend implementing the StorageBackend protocol (not started)

    Raises:
        StorageNotConfiguredError: If the provider is unsupported or settings are missing

    Example:
        settings = get_storage_settings()
        backend = create_storage_backend(settings)
        await backend.startup()
    """
    missing = settings.missing_settings()
    if missing:
        msg = f"Storage provider '{settings.provider}' is not configured. Missing: {', '.join(missing)}"
        raise StorageNotConfiguredError(msg, metadata={"provider": str(settings.provider), "missing": missing})

    provider = settings.provider

    match provider:
        case StorageProviderType.DESCRIPTOR:
            from .descriptor.backend import DescriptorBackend

            return DescriptorBackend(settings, **backend_kwargs)

        case _ if provider in S3_COMPATIBLE_PROVIDERS:
            # AWS and every S3-compatible preset share one backend
            from .s3.backend import S3Backend

            return S3Backend(settings, **backend_kwargs)

        case StorageProviderType.AZURE:
            from .azure.backend import AzureBlobBackend

            return AzureBlobBackend(settings, **backend_kwargs)

        case StorageProviderType.LOCAL:
            from .local.backend import LocalBackend

            return LocalBackend(settings)

        case _:
            msg = (
                f"Unsupported storage provider: {provider}. "
                f"Supported providers: {', '.join(t.value for t in StorageProviderType)}"
            )
            raise StorageNotConfiguredError(msg)
