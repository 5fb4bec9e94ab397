"""HTTP clients for remote APIs."""

from .base_client import BaseHTTPClient

__all__ = ["BaseHTTPClient"]
