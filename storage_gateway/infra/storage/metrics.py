"""Storage metrics for Prometheus monitoring.

Covers:
- Operation counters and timing (upload, stream, list, search, delete, ...)
- Transferred size distribution
- Open stream tracking
- Error tracking by type
- Signed URL resolution and orphaned upload descriptors

All metrics are registered with the shared REGISTRY from the prometheus module.

Usage:
    from storage_gateway.infra.storage.metrics import (
        record_operation_success,
        record_operation_error,
    )

    record_operation_success("upload", duration_seconds=1.5, size_bytes=1048576)
    record_operation_error("stream", "StorageTimeoutError", duration_seconds=5.0)
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

from storage_gateway.infra.metrics.prometheus import REGISTRY

# Covers latency from 10ms to 30s for network operations
STORAGE_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

# 1KB to 100MB
STORAGE_SIZE_BUCKETS = (1024, 10240, 102400, 1048576, 10485760, 52428800, 104857600)

storage_operations_total = Counter(
    "storage_operations_total",
    "Total storage operations",
    ["operation", "status"],
    registry=REGISTRY,
)

storage_operation_duration_seconds = Histogram(
    "storage_operation_duration_seconds",
    "Storage operation duration in seconds",
    ["operation"],
    buckets=STORAGE_LATENCY_BUCKETS,
    registry=REGISTRY,
)

storage_file_size_bytes = Histogram(
    "storage_file_size_bytes",
    "Size of files uploaded/streamed in bytes",
    ["operation"],
    buckets=STORAGE_SIZE_BUCKETS,
    registry=REGISTRY,
)

storage_operations_active = Gauge(
    "storage_operations_active",
    "Number of storage operations in flight",
    registry=REGISTRY,
)

storage_streams_open = Gauge(
    "storage_streams_open",
    "Number of file streams opened and not yet released",
    registry=REGISTRY,
)

storage_errors_total = Counter(
    "storage_errors_total",
    "Storage operation errors by type",
    ["operation", "error_type"],
    registry=REGISTRY,
)

storage_signed_urls_resolved = Counter(
    "storage_signed_urls_resolved",
    "Signed download URLs resolved",
    ["backend", "verified"],
    registry=REGISTRY,
)

storage_upload_descriptors_orphaned = Counter(
    "storage_upload_descriptors_orphaned",
    "Upload descriptors left behind after a failed transmit/commit/refetch",
    ["cleaned_up"],
    registry=REGISTRY,
)


def record_operation_success(
    operation: str,
    duration_seconds: float,
    size_bytes: int | None = None,
) -> None:
    """Record a successful storage operation.

    Args:
        operation: The operation type (e.g., 'upload', 'stream', 'delete')
        duration_seconds: Operation duration in seconds
        size_bytes: Optional file size in bytes for transfer operations

    Example:
        >>> record_operation_success("upload", 1.5, size_bytes=1048576)
    """
    storage_operations_total.labels(operation=operation, status="success").inc()
    storage_operation_duration_seconds.labels(operation=operation).observe(duration_seconds)
    if size_bytes is not None:
        storage_file_size_bytes.labels(operation=operation).observe(size_bytes)


def record_operation_error(
    operation: str,
    error_type: str,
    duration_seconds: float,
) -> None:
    """Record a failed storage operation.

    Args:
        operation: The operation type (e.g., 'upload', 'stream', 'delete')
        error_type: The error class name (e.g., 'StorageTimeoutError')
        duration_seconds: Operation duration in seconds before failure
    """
    storage_operations_total.labels(operation=operation, status="error").inc()
    storage_operation_duration_seconds.labels(operation=operation).observe(duration_seconds)
    storage_errors_total.labels(operation=operation, error_type=error_type).inc()


def record_orphaned_descriptor(cleaned_up: bool) -> None:
    """Count an upload descriptor left by a failed upload."""
    storage_upload_descriptors_orphaned.labels(cleaned_up=str(cleaned_up).lower()).inc()
