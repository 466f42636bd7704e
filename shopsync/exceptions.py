"""
Error taxonomy for the sync engine.

Exception Hierarchy:
    ShopSyncError (base)
    ├── UpstreamError
    │   ├── TransientUpstreamError  - Rate limit, timeout, network, 5xx (retryable)
    │   └── FatalUpstreamError      - Auth/validation/GraphQL errors (abort)
    │       └── UpstreamDataError   - Response has unexpected structure
    ├── CacheBackendError           - Cache unavailable (never fatal to a read)
    ├── ResourcePressureError       - Memory threshold breached
    └── AggregationError            - An aggregator raised (fails the cycle)

Retry and abort decisions are made with classify_error() / is_retryable(),
which look only at the exception type.
"""
from enum import Enum
from typing import Any, Optional


class ShopSyncError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class UpstreamError(ShopSyncError):
    """Error talking to the commerce platform API."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class TransientUpstreamError(UpstreamError):
    """
    Rate limited, timed out or temporarily unavailable.

    The same request may succeed if retried after a delay.
    """

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, details, status_code, error_code)
        self.retry_after = retry_after


class FatalUpstreamError(UpstreamError):
    """
    Authentication, permission or query validation failure.

    Retrying cannot help; the whole fetch is aborted.
    """


class UpstreamDataError(FatalUpstreamError):
    """
    API response has unexpected structure.

    This indicates a contract violation - the API returned
    data in a format we don't understand.
    """

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        expected: Optional[str] = None,
        got: Optional[str] = None,
    ):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class CacheBackendError(ShopSyncError):
    """Cache operation failed (connection lost, serialization, timeout)."""

    def __init__(self, operation: str, key: Optional[str] = None, details: Optional[str] = None):
        target = f" for {key}" if key else ""
        super().__init__(f"Cache {operation} failed{target}", details)
        self.operation = operation
        self.key = key


class ResourcePressureError(ShopSyncError):
    """Process memory crossed the emergency threshold."""

    def __init__(self, ratio: float, threshold: float):
        super().__init__(
            f"Memory usage {ratio * 100:.1f}% exceeds {threshold * 100:.0f}%"
        )
        self.ratio = ratio
        self.threshold = threshold


class AggregationError(ShopSyncError):
    """An aggregator raised while building its value."""

    def __init__(self, key: str, cause: Exception):
        super().__init__(f"Aggregator for {key} failed", str(cause))
        self.key = key
        self.cause = cause


class ErrorKind(Enum):
    """Classification used by retry and cycle-failure decisions."""
    TRANSIENT_UPSTREAM = "transient_upstream"
    FATAL_UPSTREAM = "fatal_upstream"
    CACHE_BACKEND = "cache_backend"
    RESOURCE_PRESSURE = "resource_pressure"
    UNKNOWN = "unknown"


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to its taxonomy variant."""
    if isinstance(error, TransientUpstreamError):
        return ErrorKind.TRANSIENT_UPSTREAM
    if isinstance(error, FatalUpstreamError):
        return ErrorKind.FATAL_UPSTREAM
    if isinstance(error, CacheBackendError):
        return ErrorKind.CACHE_BACKEND
    if isinstance(error, ResourcePressureError):
        return ErrorKind.RESOURCE_PRESSURE
    return ErrorKind.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    """Only transient upstream errors are worth another attempt."""
    return classify_error(error) is ErrorKind.TRANSIENT_UPSTREAM


def error_summary(error: BaseException) -> dict[str, Any]:
    """Compact dict for logs and persisted failure records."""
    summary: dict[str, Any] = {
        "kind": classify_error(error).value,
        "type": type(error).__name__,
        "error_message": str(error),
    }
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        summary["status_code"] = status_code
    return summary
