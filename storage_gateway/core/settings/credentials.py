"""Credential resolution settings for the descriptor API."""

from __future__ import annotations

import shlex

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_URL = "https://api.storage-gateway.dev"


class CredentialSettings(BaseSettings):
    """How the descriptor API key, base URL and project id are resolved.

    Environment variables use STORAGE_AUTH_ prefix.
    Example: STORAGE_AUTH_KEYCHAIN_ENABLED=false, STORAGE_AUTH_CLI_COMMAND="storage-gateway-cli auth check -j"

    The API key is looked up by an ordered list of resolvers
    (environment variable, OS keychain, external CLI). Each one can be
    switched off per deployment.
    """

    # ──────────────────────────────────────────────────────────────
    # Environment variable resolver
    # ──────────────────────────────────────────────────────────────

    api_key_env_var: str = Field(
        default="STORAGE_API_KEY",
        min_length=1,
        description="Environment variable holding the API key",
    )

    api_url_env_var: str = Field(
        default="STORAGE_API_URL",
        min_length=1,
        description="Environment variable holding the API base URL",
    )

    project_id_env_var: str = Field(
        default="STORAGE_PROJECT_ID",
        min_length=1,
        description="Environment variable holding the project id",
    )

    default_api_url: str = Field(
        default=DEFAULT_API_URL,
        description="API base URL used when nothing else is configured",
    )

    # ──────────────────────────────────────────────────────────────
    # Keychain resolver
    # ──────────────────────────────────────────────────────────────

    keychain_enabled: bool = Field(
        default=True,
        description="Look the API key up in the OS keychain",
    )

    keychain_service: str = Field(
        default="storage-gateway-cli",
        description="Keychain service name",
    )

    keychain_account: str = Field(
        default="default",
        description="Keychain account name",
    )

    # ──────────────────────────────────────────────────────────────
    # External CLI resolver
    # ──────────────────────────────────────────────────────────────

    cli_enabled: bool = Field(
        default=True,
        description="Ask an external CLI for the API key (spawns a subprocess)",
    )

    cli_command: str = Field(
        default="storage-gateway-cli auth check -j",
        min_length=1,
        description="Shell-style command printing the auth status as JSON",
    )

    cli_timeout: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Seconds to wait for the CLI before treating it as a miss",
    )

    # ──────────────────────────────────────────────────────────────
    # Project discovery
    # ──────────────────────────────────────────────────────────────

    project_file_name: str = Field(
        default="storage-gateway.toml",
        description="Project file searched upwards from the working directory ([project] id)",
    )

    @field_validator("cli_command")
    @classmethod
    def _validate_command(cls, value: str) -> str:
        """Reject commands that do not split into at least a program name."""
        if not shlex.split(value):
            raise ValueError("cli_command must name a program")
        return value

    @property
    def cli_argv(self) -> list[str]:
        """The CLI command split into argv form."""
        return shlex.split(self.cli_command)

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_AUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
