"""
Error taxonomy.

Cache failures are always recoverable (the caller takes the durable path).
Durable failures are fatal for a request and retried by the worker.
"""

from typing import Optional


class RPOSyncError(Exception):
    """Base class for all rpo_sync errors."""


class CacheUnavailable(RPOSyncError):
    """The cache tier could not serve the call (connection fault or open circuit)."""


class CacheMiss(RPOSyncError):
    """Nothing in the cache to act on. Signals the caller to use the durable path."""

    def __init__(self, key: str):
        super().__init__(f"Cache miss: {key}")
        self.key = key


class DurableWriteError(RPOSyncError):
    """An insert or update against the durable store failed."""

    def __init__(self, tenant: str, table: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Durable write to {tenant}.{table} failed: {message}")
        self.tenant = tenant
        self.table = table
        self.cause = cause


class DurableReadError(RPOSyncError):
    """A catalog lookup or query against the durable store failed."""

    def __init__(self, tenant: str, table: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Durable read of {tenant}.{table} failed: {message}")
        self.tenant = tenant
        self.table = table
        self.cause = cause


class TenantValidationError(RPOSyncError, ValueError):
    """Tenant identifier is malformed. Raised before any I/O."""
