"""
Valkey Client

Explicitly constructed connection to the cache tier with:
- Connection pool with open/close lifecycle (no module singleton)
- Circuit breaker so an unavailable cache fails fast
- Hit/miss/error counters for health reporting

Callers wrap every command in `guard()`; any Redis fault surfaces as
CacheUnavailable, which the cache store turns into a fallback sentinel.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError

from rpo_sync.cache.config import CacheConfig, get_cache_config
from rpo_sync.errors import CacheUnavailable


logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Counters reported by get_stats() and health_check()."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    writes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CircuitBreaker:
    """
    After `threshold` consecutive failures the circuit opens and every call
    fails immediately for `timeout` seconds; then one call is let through.
    """

    def __init__(self, threshold: int = 5, timeout: int = 60):
        self.threshold = threshold
        self.timeout = timeout
        self.failures = 0
        self.is_open = False
        self.opened_at = 0.0
        self._lock = asyncio.Lock()

    async def is_available(self) -> bool:
        if not self.is_open:
            return True

        if time.monotonic() - self.opened_at >= self.timeout:
            async with self._lock:
                # Half-open: allow the next request through
                self.is_open = False
                self.failures = 0
                logger.info("Circuit breaker closed, allowing cache requests")
            return True

        return False

    async def record_success(self):
        async with self._lock:
            self.failures = 0
            self.is_open = False

    async def record_failure(self):
        async with self._lock:
            self.failures += 1
            if self.failures >= self.threshold and not self.is_open:
                self.is_open = True
                self.opened_at = time.monotonic()
                logger.warning(
                    f"Circuit breaker opened after {self.failures} failures. "
                    f"Will retry in {self.timeout} seconds."
                )


class CacheClient:
    """
    Process-wide handle on the Valkey connection pool.

    Construct once at startup, `await open()`, pass into CacheStore, and
    `await close()` on shutdown. An already-built `Redis` instance can be
    injected (tests, shared pools); it must use `decode_responses=True`.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        redis: Optional[Redis] = None,
    ):
        self.config = config or get_cache_config()
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[Redis] = redis
        self._owns_connection = redis is None
        self._circuit_breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            timeout=self.config.circuit_breaker_timeout,
        ) if self.config.circuit_breaker_enabled else None
        self.stats = CacheStats()
        self._opened = redis is not None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            raise CacheUnavailable("Cache client is not open")
        return self._redis

    async def open(self):
        """Create the connection pool and verify connectivity."""
        if self._opened:
            return

        async with self._lock:
            if self._opened:
                return

            try:
                self._pool = ConnectionPool.from_url(
                    self.config.redis_url,
                    max_connections=self.config.redis_max_connections,
                    socket_timeout=self.config.redis_socket_timeout,
                    socket_connect_timeout=self.config.redis_connect_timeout,
                    decode_responses=True,
                )
                self._redis = Redis(connection_pool=self._pool)

                await self._redis.ping()
                self._opened = True
                logger.info(f"Valkey connected: {self._safe_url()}")

            except RedisError as e:
                logger.error(f"Failed to connect to Valkey: {e}")
                self._opened = False
                self._redis = None
                self._pool = None
                raise CacheUnavailable(str(e)) from e

    async def close(self):
        """Close the connection pool."""
        if self._redis is not None and self._owns_connection:
            await self._redis.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
        if self._owns_connection:
            self._redis = None
        self._pool = None
        self._opened = False
        logger.info("Valkey connection closed")

    def _safe_url(self) -> str:
        """Connection URL without credentials, for logs."""
        url = self.config.redis_url
        if "@" in url:
            scheme, _, rest = url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return url

    @asynccontextmanager
    async def guard(self):
        """
        Wrap cache commands with the circuit breaker and statistics.

        Raises CacheUnavailable when the cache is disabled, closed, the
        circuit is open, or a Redis error occurs inside the block.
        """
        if not self.config.enabled:
            raise CacheUnavailable("Cache disabled")
        if self._circuit_breaker and not await self._circuit_breaker.is_available():
            raise CacheUnavailable("Circuit breaker is open")
        if not self._opened:
            if not self._owns_connection:
                raise CacheUnavailable("Cache client is not open")
            # Reconnect after a failed startup or a close()
            try:
                await self.open()
            except CacheUnavailable:
                self.stats.errors += 1
                if self._circuit_breaker:
                    await self._circuit_breaker.record_failure()
                raise

        try:
            yield self.redis
        except RedisError as e:
            self.stats.errors += 1
            if self._circuit_breaker:
                await self._circuit_breaker.record_failure()
            raise CacheUnavailable(str(e)) from e

        if self._circuit_breaker:
            await self._circuit_breaker.record_success()

    def record_hit(self):
        self.stats.hits += 1

    def record_miss(self):
        self.stats.misses += 1

    def record_write(self):
        self.stats.writes += 1

    # =========================================================================
    # Statistics and Health
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "enabled": self.config.enabled,
            "connected": self._opened,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "writes": self.stats.writes,
            "errors": self.stats.errors,
            "hit_rate_percent": round(self.stats.hit_rate * 100, 2),
            "circuit_breaker_open": (
                self._circuit_breaker.is_open
                if self._circuit_breaker else False
            ),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Ping the cache and report latency and memory usage."""
        if not self.config.enabled:
            return {"connected": False, "status": "disabled"}

        try:
            start = time.time()
            async with self.guard() as redis:
                await redis.ping()
                memory = await redis.info("memory")
            latency_ms = (time.time() - start) * 1000

            return {
                "connected": True,
                "status": "connected",
                "latency_ms": round(latency_ms, 2),
                "memory": memory.get("used_memory_human", "N/A"),
                "stats": self.get_stats(),
            }

        except CacheUnavailable as e:
            return {
                "connected": False,
                "status": "error",
                "error": str(e),
                "stats": self.get_stats(),
            }
