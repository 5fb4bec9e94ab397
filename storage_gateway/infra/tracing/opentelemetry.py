"""OpenTelemetry tracer access.

The library only depends on ``opentelemetry-api``. Spans are no-ops until
the host application installs an SDK ``TracerProvider``; exporters and
sampling are the host's concern.
"""

from __future__ import annotations

from opentelemetry import trace

_INSTRUMENTATION_PREFIX = "storage_gateway"


def get_tracer(component: str) -> trace.Tracer:
    """Get a tracer scoped to a storage gateway component.

    Args:
        component: Component name, e.g. "storage" or "credentials".

    Returns:
        Tracer from the globally configured provider.
    """
    return trace.get_tracer(f"{_INSTRUMENTATION_PREFIX}.{component}")
