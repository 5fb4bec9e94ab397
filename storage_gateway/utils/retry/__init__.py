from __future__ import annotations

from storage_gateway.utils.retry.decorator import retry
from storage_gateway.utils.retry.statistics import RetryStatistics
from storage_gateway.utils.retry.strategies import RetryStrategy, is_transient_http_error

__all__ = ["RetryStatistics", "RetryStrategy", "is_transient_http_error", "retry"]
