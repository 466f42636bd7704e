"""
shopsync: synchronization & cache-refresh engine for a commerce platform.

Periodically pulls orders, products and customers from the Shopify GraphQL
API, aggregates them and publishes the results into Redis under tiered
TTLs.

Package layout:
- config / observability / exceptions / events: ambient stack
- upstream / pagination: paginated fetch client
- cache / cache_keys: cache store and key namespace
- aggregation / alerts: report building
- sync_service / monitor / cleanup / scheduler: the engine's jobs
- engine: wiring and administrative operations
"""

__version__ = "1.0.0"

# Import in dependency order
from shopsync.exceptions import (
    ShopSyncError,
    UpstreamError,
    TransientUpstreamError,
    FatalUpstreamError,
    UpstreamDataError,
    CacheBackendError,
    ResourcePressureError,
    AggregationError,
    ErrorKind,
    classify_error,
    is_retryable,
)

from shopsync.config import config, validate_config, ConfigurationError

__all__ = [
    # Exceptions
    "ShopSyncError",
    "UpstreamError",
    "TransientUpstreamError",
    "FatalUpstreamError",
    "UpstreamDataError",
    "CacheBackendError",
    "ResourcePressureError",
    "AggregationError",
    "ErrorKind",
    "classify_error",
    "is_retryable",
    # Config
    "config",
    "validate_config",
    "ConfigurationError",
]
