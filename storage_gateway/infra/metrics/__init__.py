"""Prometheus metrics registry."""

from .prometheus import REGISTRY, render_metrics

__all__ = ["REGISTRY", "render_metrics"]
