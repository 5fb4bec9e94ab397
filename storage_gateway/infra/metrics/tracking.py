"""Retry metrics shared by HTTP clients.

Functions here are thin wrappers so call sites do not import metric
objects directly.
"""

from __future__ import annotations

from prometheus_client import Counter

from .prometheus import REGISTRY

retry_attempts_total = Counter(
    "storage_gateway_retry_attempts_total",
    "Retry attempts by operation and attempt number",
    ["operation", "attempt_number"],
    registry=REGISTRY,
)

retry_exhausted_total = Counter(
    "storage_gateway_retry_exhausted_total",
    "Operations that failed after exhausting every retry",
    ["operation"],
    registry=REGISTRY,
)

retry_success_after_failure_total = Counter(
    "storage_gateway_retry_success_after_failure_total",
    "Operations that succeeded after at least one retry",
    ["operation", "attempts_needed"],
    registry=REGISTRY,
)


def track_retry_attempt(operation: str, attempt_number: int) -> None:
    """Track a retry attempt.

    Args:
        operation: Name of the operation being retried
        attempt_number: Current attempt number (1-indexed)
    """
    retry_attempts_total.labels(
        operation=operation,
        attempt_number=str(attempt_number),
    ).inc()


def track_retry_exhausted(operation: str) -> None:
    """Track when all retry attempts are exhausted."""
    retry_exhausted_total.labels(operation=operation).inc()


def track_retry_success(operation: str, attempts_needed: int) -> None:
    """Track successful operation after retries."""
    retry_success_after_failure_total.labels(
        operation=operation,
        attempts_needed=str(attempts_needed),
    ).inc()
