"""Object storage configuration settings.

Environment variables use STORAGE_ prefix.
Example: STORAGE_PROVIDER="s3"
         STORAGE_BUCKET="uploads"

Supports:
- The descriptor-mediated storage API (default)
- AWS S3 and S3-compatible presets (DigitalOcean Spaces, Wasabi,
  Backblaze B2, Cloudflare R2, custom endpoints)
- Azure Blob Storage containers (SAS tokens for temporary public access)
- A local filesystem store for development and tests
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import (
    Field,
    SecretStr,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageProviderType(StrEnum):
    """Closed set of storage providers the factory can build."""

    DESCRIPTOR = "descriptor"
    S3 = "s3"
    AWS = "aws"
    DIGITALOCEAN = "digitalocean"
    WASABI = "wasabi"
    BACKBLAZE = "backblaze"
    R2 = "r2"
    S3_CUSTOM = "s3-custom"
    AZURE = "azure"
    LOCAL = "local"


S3_COMPATIBLE_PROVIDERS = frozenset(
    {
        StorageProviderType.S3,
        StorageProviderType.AWS,
        StorageProviderType.DIGITALOCEAN,
        StorageProviderType.WASABI,
        StorageProviderType.BACKBLAZE,
        StorageProviderType.R2,
        StorageProviderType.S3_CUSTOM,
    }
)

# Endpoint templates for S3-compatible presets, formatted with region/account_id
_PRESET_ENDPOINTS: dict[StorageProviderType, str] = {
    StorageProviderType.DIGITALOCEAN: "https://{region}.digitaloceanspaces.com",
    StorageProviderType.WASABI: "https://s3.{region}.wasabisys.com",
    StorageProviderType.BACKBLAZE: "https://s3.{region}.backblazeb2.com",
    StorageProviderType.R2: "https://{account_id}.r2.cloudflarestorage.com",
}


class StorageSettings(BaseSettings):
    """Object storage settings.

    Environment variables use STORAGE_ prefix.
    Example: STORAGE_PROVIDER=local STORAGE_LOCAL_ROOT=./uploads
    """

    # ──────────────────────────────────────────────────────────────
    # Provider selection
    # ──────────────────────────────────────────────────────────────

    provider: StorageProviderType = Field(
        default=StorageProviderType.DESCRIPTOR,
        description="Storage provider: descriptor, s3, aws, digitalocean, wasabi, backblaze, r2, s3-custom, azure, local",
    )

    key_namespace: str = Field(
        default="files",
        min_length=1,
        max_length=200,
        description="Namespace used when synthesizing storage keys (<namespace>/<external_id>-<ts>.<ext>)",
    )

    # ──────────────────────────────────────────────────────────────
    # Descriptor API Configuration
    # ──────────────────────────────────────────────────────────────

    api_url: str | None = Field(
        default=None,
        description="Base URL of the descriptor API. None resolves through the credential layer.",
    )

    api_prefix: str = Field(
        default="/api/v1/storage",
        description="Path prefix of the descriptor API file endpoints",
    )

    project_id: str | None = Field(
        default=None,
        description="Project scope for descriptor API calls. None resolves from env or project file.",
    )

    api_key: SecretStr | None = Field(
        default=None,
        description="Explicit descriptor API key. None resolves through the credential chain.",
    )

    timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Request timeout in seconds for metadata and transfer calls",
    )

    verify_signed_urls: bool = Field(
        default=False,
        description="Probe signed URLs with a one-byte range request before returning them",
    )

    cleanup_failed_uploads: bool = Field(
        default=False,
        description="Best-effort delete of the descriptor when transmit/commit/refetch fails",
    )

    list_page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Page size used when fetching the listing superset from the descriptor API",
    )

    list_max_records: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Upper bound of records fetched before client-side filtering",
    )

    # ──────────────────────────────────────────────────────────────
    # S3 Connection Configuration
    # ──────────────────────────────────────────────────────────────

    bucket: str | None = Field(
        default=None,
        min_length=3,
        max_length=63,
        description="Bucket for S3-compatible providers",
    )

    region: str = Field(
        default="us-east-1",
        description="Region used for request signing and preset endpoints",
    )

    endpoint: str | None = Field(
        default=None,
        description="Explicit S3-compatible endpoint URL. Overrides preset endpoints.",
    )

    account_id: str | None = Field(
        default=None,
        description="Cloudflare account id (required for the r2 provider)",
    )

    access_key: SecretStr | None = Field(
        default=None,
        description="S3 access key ID",
    )

    secret_key: SecretStr | None = Field(
        default=None,
        description="S3 secret access key",
    )

    cdn_url: str | None = Field(
        default=None,
        description="CDN base URL used for public object URLs (highest precedence)",
    )

    public_base_url: str | None = Field(
        default=None,
        description="Base URL for public object URLs (S3) or served files (local)",
    )

    use_ssl: bool = Field(
        default=True,
        description="Use SSL/TLS for S3 connections",
    )

    verify_ssl: bool = Field(
        default=True,
        description="Verify SSL certificates",
    )

    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="botocore retry attempts for failed S3 calls",
    )

    retry_mode: str = Field(
        default="adaptive",
        description="botocore retry mode: standard, adaptive, or legacy",
    )

    max_pool_connections: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Maximum number of connections in the S3 connection pool",
    )

    # ──────────────────────────────────────────────────────────────
    # Azure Blob Configuration
    # ──────────────────────────────────────────────────────────────

    container: str | None = Field(
        default=None,
        min_length=3,
        max_length=63,
        description="Blob container for the azure provider",
    )

    azure_account_name: str | None = Field(
        default=None,
        description="Storage account name (read from the connection string when omitted)",
    )

    azure_account_key: SecretStr | None = Field(
        default=None,
        description="Shared account key; required to sign SAS URLs",
    )

    azure_connection_string: SecretStr | None = Field(
        default=None,
        description="Full connection string; takes precedence over the other credentials",
    )

    azure_sas_token: SecretStr | None = Field(
        default=None,
        description="Account or container SAS token used as the client credential",
    )

    azure_account_url: str | None = Field(
        default=None,
        description="Blob service URL override (e.g. an Azurite emulator)",
    )

    # ──────────────────────────────────────────────────────────────
    # Local Filesystem Configuration
    # ──────────────────────────────────────────────────────────────

    local_root: Path = Field(
        default=Path("uploads"),
        description="Root directory of the local filesystem store",
    )

    signing_secret: SecretStr | None = Field(
        default=None,
        description="HMAC secret for time-limited local links",
    )

    temporary_public_ttl: int | None = Field(
        default=None,
        ge=60,
        le=604800,
        description="When set, public local files get signed links valid for this many seconds",
    )

    # ──────────────────────────────────────────────────────────────
    # URLs and Streaming
    # ──────────────────────────────────────────────────────────────

    presigned_url_expiry_seconds: int = Field(
        default=3600,
        ge=60,
        le=604800,  # 7 days max
        description="Presigned URL expiration in seconds (default 1 hour)",
    )

    streaming_chunk_size: int = Field(
        default=1024 * 1024,  # 1MB
        ge=1024,
        le=104857600,
        description="Chunk size in bytes for streaming uploads/downloads",
    )

    # ──────────────────────────────────────────────────────────────
    # Validators
    # ──────────────────────────────────────────────────────────────

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> Any:
        """Accept provider names in any case."""
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        """Ensure the prefix starts with a slash and has no trailing slash."""
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = f"/{value}"
        return value

    @field_validator("retry_mode")
    @classmethod
    def _validate_retry_mode(cls, value: str) -> str:
        """Validate retry_mode is one of the allowed values."""
        allowed_modes = {"standard", "adaptive", "legacy"}
        if value not in allowed_modes:
            raise ValueError(f"retry_mode must be one of {allowed_modes}, got {value}")
        return value

    @model_validator(mode="after")
    def _validate_credential_consistency(self) -> StorageSettings:
        """Validate that both S3 credentials are provided together or neither."""
        if (self.access_key is None) != (self.secret_key is None):
            raise ValueError(
                "Both access_key and secret_key must be provided together when using "
                "static credentials. Provide both or neither (for IAM role authentication)."
            )
        return self

    # ──────────────────────────────────────────────────────────────
    # Computed Properties
    # ──────────────────────────────────────────────────────────────

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_s3_compatible(self) -> bool:
        """Check if the provider is served by the S3 backend."""
        return self.provider in S3_COMPATIBLE_PROVIDERS

    @computed_field  # type: ignore[prop-decorator]
    @property
    def effective_region(self) -> str:
        """Region after presets are applied (R2 always signs with 'auto')."""
        if self.provider == StorageProviderType.R2:
            return "auto"
        return self.region

    @computed_field  # type: ignore[prop-decorator]
    @property
    def effective_endpoint(self) -> str | None:
        """Endpoint after presets are applied. None means AWS default endpoints."""
        if self.endpoint:
            return self.endpoint.rstrip("/")
        template = _PRESET_ENDPOINTS.get(self.provider)
        if template is None:
            return None
        if self.provider == StorageProviderType.R2 and not self.account_id:
            return None
        return template.format(region=self.region, account_id=self.account_id)

    def _azure_connection_fields(self) -> dict[str, str]:
        """``Key=Value`` pairs of the Azure connection string (empty without one)."""
        if self.azure_connection_string is None:
            return {}
        fields: dict[str, str] = {}
        for part in self.azure_connection_string.get_secret_value().split(";"):
            name, sep, value = part.partition("=")
            if sep and name.strip():
                fields[name.strip()] = value.strip()
        return fields

    @computed_field  # type: ignore[prop-decorator]
    @property
    def effective_azure_account_name(self) -> str | None:
        """Account name from settings, else from the connection string."""
        return self.azure_account_name or self._azure_connection_fields().get("AccountName")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def effective_azure_account_url(self) -> str | None:
        """Blob service URL: explicit override, connection string, then the public cloud default."""
        if self.azure_account_url:
            return self.azure_account_url.rstrip("/")
        endpoint = self._azure_connection_fields().get("BlobEndpoint")
        if endpoint:
            return endpoint.rstrip("/")
        account = self.effective_azure_account_name
        if account is None:
            return None
        return f"https://{account}.blob.core.windows.net"

    def get_azure_account_key(self) -> str | None:
        """Shared key used to sign SAS URLs, from settings or the connection string."""
        if self.azure_account_key is not None:
            return self.azure_account_key.get_secret_value()
        return self._azure_connection_fields().get("AccountKey")

    # ──────────────────────────────────────────────────────────────
    # Helper Methods
    # ──────────────────────────────────────────────────────────────

    def missing_settings(self) -> list[str]:
        """Return the settings the selected provider still needs.

        The descriptor provider is resolved against the credential layer at
        startup, so only S3-style and Azure providers are checked here.
        """
        missing: list[str] = []
        if self.is_s3_compatible:
            if not self.bucket:
                missing.append("STORAGE_BUCKET")
            if self.provider == StorageProviderType.R2 and not self.account_id and not self.endpoint:
                missing.append("STORAGE_ACCOUNT_ID")
            if self.provider == StorageProviderType.S3_CUSTOM and not self.endpoint:
                missing.append("STORAGE_ENDPOINT")
        elif self.provider == StorageProviderType.AZURE:
            if not self.container:
                missing.append("STORAGE_CONTAINER")
            if self.azure_connection_string is None:
                if not self.azure_account_name and not self.azure_account_url:
                    missing.append("STORAGE_AZURE_ACCOUNT_NAME")
                if self.azure_account_key is None and self.azure_sas_token is None:
                    missing.append("STORAGE_AZURE_ACCOUNT_KEY")
        return missing

    def get_boto3_config(self) -> dict[str, Any]:
        """Get configuration dict for creating an aioboto3 S3 client.

        Returns:
            Dictionary with region, SSL settings, endpoint and, when provided,
            static credentials. Without credentials botocore falls back to its
            default provider chain (env, profile, IAM role).
        """
        config: dict[str, Any] = {
            "region_name": self.effective_region,
            "use_ssl": self.use_ssl,
            "verify": self.verify_ssl,
        }

        if self.access_key is not None and self.secret_key is not None:
            config["aws_access_key_id"] = self.access_key.get_secret_value()
            config["aws_secret_access_key"] = self.secret_key.get_secret_value()

        if self.effective_endpoint:
            config["endpoint_url"] = self.effective_endpoint

        return config

    # ──────────────────────────────────────────────────────────────
    # Model Configuration
    # ──────────────────────────────────────────────────────────────

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        env_ignore_empty=True,
    )
