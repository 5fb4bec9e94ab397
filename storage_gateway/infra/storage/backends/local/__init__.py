"""Local filesystem storage backend."""

from .backend import LocalBackend, sign_local_url, verify_local_url

__all__ = ["LocalBackend", "sign_local_url", "verify_local_url"]
