"""Descriptor storage API backend."""

from .backend import DescriptorBackend
from .client import ContentTransferClient, DescriptorClient

__all__ = ["ContentTransferClient", "DescriptorBackend", "DescriptorClient"]
