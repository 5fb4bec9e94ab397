"""Storage operation instrumentation with OpenTelemetry and Prometheus metrics.

Every public ``StorageService`` operation runs inside
``track_storage_operation`` which opens a span and records counters,
durations and sizes.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry.trace import Status, StatusCode

from storage_gateway.infra.tracing.opentelemetry import get_tracer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_tracer = get_tracer("storage")


@asynccontextmanager
async def track_storage_operation(
    operation: str,
    key: str | None = None,
    backend: str | None = None,
    size_bytes: int | None = None,
    content_type: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Track a storage operation with an OpenTelemetry span and Prometheus metrics.

    The yielded dict can be updated by the caller; its entries are recorded
    on the span when the block exits, and ``result_size`` feeds the size
    histogram.

    Args:
        operation: Operation name (upload, stream, list, search, delete, ...)
        key: Storage key or external id being operated on
        backend: Backend name serving the operation
        size_bytes: Declared size in bytes (for uploads)
        content_type: MIME content type
        metadata: Additional attributes to include in the span

    Yields:
        A context dictionary that can be updated with additional attributes

    Example:
        async with track_storage_operation("upload", key="files/a.txt") as ctx:
            result = await backend.upload_file(request)
            ctx["result_size"] = result.size
    """
    from . import metrics

    start_time = time.perf_counter()
    context: dict[str, Any] = {}

    span_attributes: dict[str, Any] = {"storage.operation": operation}
    if key:
        span_attributes["storage.key"] = key
    if backend:
        span_attributes["storage.backend"] = backend
    if size_bytes is not None:
        span_attributes["storage.size_bytes"] = size_bytes
    if content_type:
        span_attributes["storage.content_type"] = content_type
    if metadata:
        for k, v in metadata.items():
            span_attributes[f"storage.metadata.{k}"] = str(v)

    metrics.storage_operations_active.inc()

    with _tracer.start_as_current_span(
        f"storage.{operation}",
        attributes=span_attributes,
    ) as span:
        try:
            yield context

            duration = time.perf_counter() - start_time
            for k, v in context.items():
                span.set_attribute(f"storage.result.{k}", str(v))

            metrics.record_operation_success(
                operation=operation,
                duration_seconds=duration,
                size_bytes=context.get("result_size", size_bytes),
            )
            span.set_status(Status(StatusCode.OK))

        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_operation_error(
                operation=operation,
                error_type=type(e).__name__,
                duration_seconds=duration,
            )
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        finally:
            metrics.storage_operations_active.dec()
