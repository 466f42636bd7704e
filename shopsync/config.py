"""
Centralized configuration for the shopsync engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from shopsync.config import config

    endpoint = config.upstream.graphql_endpoint
    interval = config.sync.interval_seconds
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class UpstreamConfig:
    """Commerce platform (Shopify GraphQL) configuration."""

    shop_domain: str = field(default_factory=lambda: os.getenv("SHOPIFY_SHOP_DOMAIN", ""))
    access_token: str = field(default_factory=lambda: os.getenv("SHOPIFY_ACCESS_TOKEN", ""))
    api_version: str = field(default_factory=lambda: os.getenv("SHOPIFY_API_VERSION", "2025-04"))
    endpoint_override: str = field(
        default_factory=lambda: os.getenv("SHOPIFY_GRAPHQL_ENDPOINT", "")
    )
    request_timeout: float = field(default_factory=lambda: _env_float("REQUEST_TIMEOUT", 30.0))

    # Pagination budget
    max_page_size: int = field(default_factory=lambda: _env_int("SHOPIFY_PAGE_SIZE", 50))
    max_retries: int = 3
    retry_base_delay: float = 1.0
    inter_page_delay: float = 0.2

    @property
    def graphql_endpoint(self) -> str:
        """Explicit endpoint, or the one derived from the shop domain."""
        if self.endpoint_override:
            return self.endpoint_override
        if self.shop_domain:
            return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"
        return ""


@dataclass(frozen=True)
class RedisConfig:
    """Cache backend configuration."""

    url: str = field(default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    enabled: bool = field(
        default_factory=lambda: os.getenv("CACHE_ENABLED", "true").lower() == "true"
    )
    default_ttl: int = field(default_factory=lambda: _env_int("CACHE_DEFAULT_TTL", 300))
    socket_timeout: float = 5.0


@dataclass(frozen=True)
class SyncConfig:
    """Sync orchestrator configuration."""

    interval_seconds: int = field(default_factory=lambda: _env_int("SYNC_INTERVAL_SECONDS", 60))
    history_size: int = field(default_factory=lambda: _env_int("SYNC_HISTORY_SIZE", 50))
    cycle_timeout_seconds: float = field(
        default_factory=lambda: _env_float("SYNC_CYCLE_TIMEOUT_SECONDS", 0.0)
    )
    failure_escalation_threshold: int = field(
        default_factory=lambda: _env_int("FAILURE_ESCALATION_THRESHOLD", 5)
    )

    # Order window fetched each cycle
    recent_order_hours: int = 24
    product_cap: int = 300
    customer_cap: int = 300
    snapshot_size: int = 100

    @property
    def last_success_ttl(self) -> int:
        """The last-sync marker outlives one missed cycle."""
        return self.interval_seconds * 2


@dataclass(frozen=True)
class MonitorConfig:
    """Health & resource monitor thresholds."""

    interval_seconds: int = field(
        default_factory=lambda: _env_int("HEALTH_CHECK_INTERVAL_SECONDS", 300)
    )
    cache_warn_ms: float = 1000.0
    cache_fail_ms: float = 5000.0
    memory_warn_ratio: float = 0.80
    memory_fail_ratio: float = 0.90
    api_credit_warn_ratio: float = 0.20
    history_size: int = 288
    validation_interval_minutes: int = 30
    performance_interval_minutes: int = 10
    summary_max_age_minutes: int = 10

    critical_modules: List[str] = field(default_factory=lambda: [
        "httpx",
        "redis",
        "apscheduler",
        "psutil",
    ])


@dataclass(frozen=True)
class CleanupConfig:
    """Retention windows and alert limits."""

    alert_max_age_hours: int = 24
    sync_metrics_max_age_days: int = 7
    alert_list_cap: int = 200
    low_stock_threshold: int = 10
    critical_stock_threshold: int = 5
    inventory_alert_interval_minutes: int = 15

    alert_categories: List[str] = field(default_factory=lambda: [
        "inventory",
        "performance",
        "system",
    ])
    temp_key_patterns: List[str] = field(default_factory=lambda: [
        "temp:*",
        "processing:*",
    ])


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "text"))
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)


# Global config instance
config = AppConfig()


# ─── Convenience Exports ──────────────────────────────────────────────────────
VERSION = config.version
SHOPIFY_ACCESS_TOKEN = config.upstream.access_token
SHOPIFY_GRAPHQL_ENDPOINT = config.upstream.graphql_endpoint
REDIS_URL = config.redis.url
SYNC_INTERVAL_SECONDS = config.sync.interval_seconds


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(cfg: Optional[AppConfig] = None, require_upstream: bool = True) -> None:
    """
    Validate that all required configuration is present and consistent.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Args:
        cfg: Configuration to validate (defaults to the global config)
        require_upstream: If True, validate Shopify credentials

    Raises:
        ConfigurationError: If required configuration is missing
    """
    from shopsync.cache_keys import shortest_sync_ttl

    cfg = cfg or config
    errors = []

    if require_upstream:
        if not cfg.upstream.access_token:
            errors.append("SHOPIFY_ACCESS_TOKEN is required but not set")
        if not cfg.upstream.graphql_endpoint:
            errors.append(
                "SHOPIFY_GRAPHQL_ENDPOINT or SHOPIFY_SHOP_DOMAIN is required but not set"
            )

    if cfg.sync.interval_seconds <= 0:
        errors.append("SYNC_INTERVAL_SECONDS must be positive")
    elif cfg.sync.interval_seconds > shortest_sync_ttl():
        # A slower cycle would let the primary aggregate expire between refreshes
        errors.append(
            f"SYNC_INTERVAL_SECONDS ({cfg.sync.interval_seconds}) exceeds the shortest "
            f"cache tier TTL ({shortest_sync_ttl()}s)"
        )

    if cfg.sync.history_size <= 0:
        errors.append("SYNC_HISTORY_SIZE must be positive")

    if cfg.sync.cycle_timeout_seconds < 0:
        errors.append("SYNC_CYCLE_TIMEOUT_SECONDS cannot be negative")

    if not 0 < cfg.monitor.memory_warn_ratio < cfg.monitor.memory_fail_ratio <= 1:
        errors.append("Memory thresholds must satisfy 0 < warn < fail <= 1")

    if cfg.monitor.cache_warn_ms >= cfg.monitor.cache_fail_ms:
        errors.append("Cache latency warn threshold must be below the fail threshold")

    if not 0 < cfg.upstream.max_page_size <= 50:
        errors.append("Upstream page size must be between 1 and 50")

    if cfg.log_format not in ("text", "json"):
        errors.append(f"LOG_FORMAT must be 'text' or 'json' (got {cfg.log_format!r})")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
