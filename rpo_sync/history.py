"""
History Service

Request-path orchestration: cache first, durable store as fallback.

    service = HistoryService(store, FallbackWriter(durable, store))
    result = await service.record_transition("RPO_ACME", EntityKind.REQUISITION, fields)
    result.source  # "cache" or "durable"
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from rpo_sync.cache.store import CacheStore
from rpo_sync.fallback import FallbackWriter
from rpo_sync.models import Category, EntityKind
from rpo_sync.utils.tenants import validate_tenant

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_DURABLE = "durable"


@dataclass
class WriteResult:
    """Outcome of a request-time write."""
    source: str
    cached_at: Optional[int] = None
    execution_time_ms: float = 0.0
    sync_scheduled: bool = False

    @property
    def fallback(self) -> bool:
        return self.source == SOURCE_DURABLE


@dataclass
class ReadResult:
    """A record served from the cache or the durable store."""
    source: str
    fields: Dict[str, Any] = field(default_factory=dict)
    cached_at: Optional[int] = None


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class HistoryService:
    """Cache-first writes, reads and patches of entity history."""

    def __init__(self, store: CacheStore, fallback: FallbackWriter):
        self.store = store
        self.fallback = fallback

    @property
    def durable(self):
        return self.fallback.durable

    async def record_transition(
        self,
        tenant: str,
        kind: EntityKind,
        fields: Dict[str, Any],
    ) -> WriteResult:
        """
        Record one status transition.

        Raises DurableWriteError when the cache failed and the durable insert
        failed too; the caller should answer "service unavailable".
        """
        start = time.perf_counter()
        record = await self.store.append(tenant, kind, fields)

        if record is not None:
            return WriteResult(
                source=SOURCE_CACHE,
                cached_at=record.cached_at,
                execution_time_ms=_elapsed_ms(start),
                sync_scheduled=True,
            )

        logger.warning(f"[{tenant}] Cache write failed for {kind.value}, writing durably")
        await self.fallback.write(tenant, kind, fields)
        return WriteResult(source=SOURCE_DURABLE, execution_time_ms=_elapsed_ms(start))

    async def get_latest(
        self,
        tenant: str,
        entity_id: str,
        category: Category,
        ordinal: int = 0,
    ) -> Optional[ReadResult]:
        """
        The ordinal-th most recent record of a category (0 = latest).

        None when neither store holds one. Raises DurableReadError when the
        cache missed and the durable store could not be queried.
        """
        validate_tenant(tenant)
        if ordinal < 0:
            raise ValueError("ordinal must be >= 0")

        record = await self.store.get_latest(tenant, entity_id, category, ordinal)
        if record is not None:
            return ReadResult(SOURCE_CACHE, record.payload(), record.cached_at)

        columns = await self.fallback.schemas.describe(tenant, EntityKind.REQUISITION.history_table)
        if not columns:
            return None

        row = await self.durable.fetch_latest_in_category(
            tenant, columns, entity_id, category, ordinal=ordinal
        )
        if row is None:
            return None
        return ReadResult(SOURCE_DURABLE, row)

    async def patch_latest(
        self,
        tenant: str,
        entity_id: str,
        category: Category,
        partial_fields: Dict[str, Any],
        ordinal: int = 0,
    ) -> Optional[WriteResult]:
        """Patch the ordinal-th latest record of a category; None if there is none."""
        validate_tenant(tenant)
        start = time.perf_counter()

        if await self.store.patch_latest(tenant, entity_id, category, partial_fields, ordinal):
            return WriteResult(
                source=SOURCE_CACHE,
                execution_time_ms=_elapsed_ms(start),
                sync_scheduled=True,
            )

        if await self.fallback.patch_latest(tenant, entity_id, category, partial_fields, ordinal):
            return WriteResult(source=SOURCE_DURABLE, execution_time_ms=_elapsed_ms(start))

        return None

    async def update_row(
        self,
        tenant: str,
        kind: EntityKind,
        row_id: int,
        fields: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        return await self.fallback.update_row(tenant, kind, row_id, fields)

    async def reload_status_map(self, tenant: str, kind: EntityKind) -> int:
        """Copy the status reference table into the cache. Returns the entry count."""
        entries = await self.durable.fetch_status_entries(tenant, kind)
        if not await self.store.load_status_map(tenant, kind, entries):
            return 0
        return len(entries)
