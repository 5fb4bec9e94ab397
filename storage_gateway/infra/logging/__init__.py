"""Logging setup for the storage gateway."""

from .config import configure_logging, setup_logging
from .formatters import ExtraFieldsFormatter, JSONFormatter

__all__ = [
    "ExtraFieldsFormatter",
    "JSONFormatter",
    "configure_logging",
    "setup_logging",
]
