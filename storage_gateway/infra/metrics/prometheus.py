"""Prometheus registry shared by all storage gateway metrics.

A dedicated registry keeps library metrics out of the host's default
registry; hosts expose it next to their own with ``generate_latest(REGISTRY)``.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, generate_latest

REGISTRY = CollectorRegistry()


def render_metrics() -> bytes:
    """Render all storage gateway metrics in Prometheus text format."""
    return generate_latest(REGISTRY)
