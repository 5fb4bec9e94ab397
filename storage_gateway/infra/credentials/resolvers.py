"""Credential resolution for the descriptor storage API.

The API key is resolved by an explicit, ordered list of strategies. Each
strategy returns the key or ``None`` (a miss); the first hit wins:

1. ``EnvApiKeyResolver``: an environment variable
2. ``KeychainApiKeyResolver``: the OS keychain via ``keyring``
3. ``CliApiKeyResolver``: an external CLI subprocess printing JSON

Strategies are plain objects behind the ``ApiKeyResolver`` protocol, so a
deployment can reorder, drop or replace them (the subprocess strategy in
particular). Base URL and project id have simpler, synchronous lookups.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
import tomllib
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError

from storage_gateway.infra.storage.exceptions import StorageNotConfiguredError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from storage_gateway.core.settings.credentials import CredentialSettings

logger = logging.getLogger(__name__)


@runtime_checkable
class ApiKeyResolver(Protocol):
    """One strategy of the API key chain."""

    @property
    def name(self) -> str: ...

    async def resolve(self) -> str | None:
        """Return the API key, or None when this strategy has none."""
        ...


class EnvApiKeyResolver:
    """Read the API key from an environment variable."""

    def __init__(self, var: str = "STORAGE_API_KEY") -> None:
        self.var = var

    @property
    def name(self) -> str:
        return f"env:{self.var}"

    async def resolve(self) -> str | None:
        value = os.environ.get(self.var, "").strip()
        return value or None


class KeychainApiKeyResolver:
    """Read the API key from the OS keychain.

    Keychain backends block, so the lookup runs in a worker thread. A
    missing or broken keychain is a miss, not an error.
    """

    def __init__(self, service: str = "storage-gateway-cli", account: str = "default") -> None:
        self.service = service
        self.account = account

    @property
    def name(self) -> str:
        return f"keychain:{self.service}"

    async def resolve(self) -> str | None:
        try:
            value = await asyncio.to_thread(keyring.get_password, self.service, self.account)
        except KeyringError as e:
            logger.debug(
                "Keychain lookup failed",
                extra={"service": self.service, "error": str(e)},
            )
            return None
        return value.strip() if value and value.strip() else None


def _extract_cli_api_key(payload: Any) -> str | None:
    """Find the key in ``data.user.api_key`` or a top-level ``api_key``."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict):
        user = data.get("user")
        if isinstance(user, dict) and user.get("api_key"):
            return str(user["api_key"])
    if payload.get("api_key"):
        return str(payload["api_key"])
    return None


class CliApiKeyResolver:
    """Ask an external CLI for the API key.

    Runs ``command`` as a subprocess and parses the JSON it prints. A
    missing binary, non-zero exit, timeout or unparseable output is a miss.
    """

    def __init__(self, command: Sequence[str], timeout: float = 10.0) -> None:
        if not command:
            raise ValueError("command must name a program")
        self.command = list(command)
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"cli:{self.command[0]}"

    async def resolve(self) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug("Auth CLI not available", extra={"command": self.command[0], "error": str(e)})
            return None

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(
                "Auth CLI timed out",
                extra={"command": self.command[0], "timeout_seconds": self.timeout},
            )
            return None

        if process.returncode != 0:
            logger.debug(
                "Auth CLI exited with an error",
                extra={
                    "command": self.command[0],
                    "returncode": process.returncode,
                    "stderr": stderr.decode("utf-8", errors="replace")[:500],
                },
            )
            return None

        try:
            payload = json.loads(stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Auth CLI printed invalid JSON", extra={"error": str(e)})
            return None
        return _extract_cli_api_key(payload)


def build_default_resolvers(settings: CredentialSettings) -> list[ApiKeyResolver]:
    """Build the env -> keychain -> CLI chain, honoring per-strategy switches."""
    resolvers: list[ApiKeyResolver] = [EnvApiKeyResolver(settings.api_key_env_var)]
    if settings.keychain_enabled:
        resolvers.append(
            KeychainApiKeyResolver(settings.keychain_service, settings.keychain_account)
        )
    if settings.cli_enabled:
        resolvers.append(CliApiKeyResolver(settings.cli_argv, timeout=settings.cli_timeout))
    return resolvers


async def resolve_api_key(resolvers: Sequence[ApiKeyResolver]) -> str:
    """Return the first key any strategy finds.

    Raises:
        StorageNotConfiguredError: If every strategy misses
    """
    tried: list[str] = []
    for resolver in resolvers:
        tried.append(resolver.name)
        value = await resolver.resolve()
        if value:
            logger.debug("API key resolved", extra={"resolver": resolver.name})
            return value

    raise StorageNotConfiguredError(
        "Storage API key not found. Set STORAGE_API_KEY or log in with the storage CLI.",
        metadata={"resolvers": tried},
    )


def resolve_api_base_url(settings: CredentialSettings) -> str:
    """Return the API base URL from the environment or the configured default."""
    value = os.environ.get(settings.api_url_env_var, "").strip()
    return (value or settings.default_api_url).rstrip("/")


def find_project_file(file_name: str, start_dir: str | Path | None = None) -> Path | None:
    """Walk up from ``start_dir`` (default: cwd) looking for ``file_name``."""
    current = Path(start_dir or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / file_name
        if candidate.is_file():
            return candidate
    return None


def resolve_project_id(
    settings: CredentialSettings,
    start_dir: str | Path | None = None,
) -> str | None:
    """Return the project id from the environment or the nearest project file.

    The project file is TOML with ``[project] id = "..."``. An unreadable
    file is logged and treated as absent.
    """
    value = os.environ.get(settings.project_id_env_var, "").strip()
    if value:
        return value

    path = find_project_file(settings.project_file_name, start_dir)
    if path is None:
        return None
    try:
        with path.open("rb") as handle:
            document = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(
            "Could not read project file",
            extra={"path": str(path), "error": str(e)},
        )
        return None

    project = document.get("project")
    if isinstance(project, dict) and project.get("id"):
        return str(project["id"])
    return None
