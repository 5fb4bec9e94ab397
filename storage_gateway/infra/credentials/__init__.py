"""API key, base URL and project id resolution for the descriptor backend."""

from .resolvers import (
    ApiKeyResolver,
    CliApiKeyResolver,
    EnvApiKeyResolver,
    KeychainApiKeyResolver,
    build_default_resolvers,
    find_project_file,
    resolve_api_base_url,
    resolve_api_key,
    resolve_project_id,
)

__all__ = [
    "ApiKeyResolver",
    "CliApiKeyResolver",
    "EnvApiKeyResolver",
    "KeychainApiKeyResolver",
    "build_default_resolvers",
    "find_project_file",
    "resolve_api_base_url",
    "resolve_api_key",
    "resolve_project_id",
]
