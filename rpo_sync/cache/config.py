"""
Cache Configuration

Centralized configuration for the Valkey tier.
Connection settings come from environment variables; retention is fixed.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache


@dataclass(frozen=True)
class CacheTTL:
    """
    Retention windows for cache-resident data.

    Every write re-applies the TTL to the key it touches, so expiry is
    measured from the last write (sliding window). Expired series fall back
    to the durable store, which keeps the full history.
    """

    SERIES: timedelta = timedelta(days=30)
    CATEGORY_INDEX: timedelta = timedelta(days=30)
    REFERENCE_DATA: timedelta = timedelta(days=30)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - VALKEY_URL: Connection URL (redis:// or rediss://)
    - VALKEY_PREFIX: Global key prefix isolating this deployment
    - CACHE_ENABLED: Enable/disable the cache tier (disabled = always fallback)
    """

    redis_url: str = field(default_factory=lambda: os.getenv(
        "VALKEY_URL",
        "redis://localhost:6379/0"
    ))

    # Global key prefix (RPO_V5:{tenant}:...)
    prefix: str = field(default_factory=lambda: os.getenv(
        "VALKEY_PREFIX",
        "RPO_V5"
    ))

    enabled: bool = field(default_factory=lambda: _env_bool("CACHE_ENABLED", "true"))

    # Connection pool
    redis_max_connections: int = field(default_factory=lambda: int(os.getenv(
        "VALKEY_MAX_CONNECTIONS",
        "20"
    )))
    redis_socket_timeout: float = field(default_factory=lambda: float(os.getenv(
        "VALKEY_SOCKET_TIMEOUT",
        "2.0"
    )))
    redis_connect_timeout: float = field(default_factory=lambda: float(os.getenv(
        "VALKEY_CONNECT_TIMEOUT",
        "2.0"
    )))

    # Circuit breaker
    circuit_breaker_enabled: bool = field(
        default_factory=lambda: _env_bool("VALKEY_CIRCUIT_BREAKER_ENABLED", "true")
    )
    circuit_breaker_threshold: int = field(default_factory=lambda: int(os.getenv(
        "VALKEY_CIRCUIT_BREAKER_THRESHOLD",
        "5"
    )))
    circuit_breaker_timeout: int = field(default_factory=lambda: int(os.getenv(
        "VALKEY_CIRCUIT_BREAKER_TIMEOUT",
        "60"
    )))

    # SCAN batch size for bulk cleanup
    scan_count: int = 100

    ttl: CacheTTL = field(default_factory=CacheTTL)


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get process-wide cache configuration."""
    return CacheConfig()
