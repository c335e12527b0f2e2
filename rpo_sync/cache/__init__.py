"""
RPO Sync Cache Tier

Valkey-backed fast tier for entity history:
- CacheClient: connection pool, circuit breaker, statistics
- TenantKeyspace: per-tenant key naming and wildcard patterns
- CacheTTL: 30-day sliding retention

The series/index engine lives in `rpo_sync.cache.store.CacheStore`.

Usage:
    client = CacheClient()
    await client.open()
    store = CacheStore(client)
    record = await store.append(tenant, EntityKind.REQUISITION, fields)
"""

from rpo_sync.cache.config import CacheConfig, CacheTTL, get_cache_config
from rpo_sync.cache.client import CacheClient, CircuitBreaker
from rpo_sync.cache.keys import TenantKeyspace

__all__ = [
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    "CacheClient",
    "CircuitBreaker",
    "TenantKeyspace",
]
