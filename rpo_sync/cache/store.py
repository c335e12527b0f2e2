"""
Cache Store

Series and category indices for entity history in the cache tier.

Every entity has a sorted set scored by `cached_at` (microseconds since the
epoch). Requisitions additionally get one sorted set per status category
holding the same members. Writes are issued as a single MULTI/EXEC batch
together with the sync-queue mark, so a series never gains a record without
the entity being queued for reconciliation.

Apart from `read_series`, no method raises on infrastructure faults:
failures are logged and reported as None / False / [] so the caller can take
the durable fallback path.
"""

import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from redis.exceptions import WatchError

from rpo_sync.cache.client import CacheClient
from rpo_sync.cache.config import CacheConfig
from rpo_sync.cache.keys import TenantKeyspace
from rpo_sync.utils.serialization import serialize_value, deserialize_value
from rpo_sync.errors import CacheMiss, CacheUnavailable
from rpo_sync.models import (
    Category,
    EntityKind,
    HistoryRecord,
    classify_status,
    records_from_members,
)
from rpo_sync.utils.tenants import validate_tenant


logger = logging.getLogger(__name__)


class MonotonicClock:
    """
    Strictly increasing microsecond timestamps for this process.

    Two calls never return the same value, even within one microsecond, so
    records appended back to back to the same series cannot share a score.
    """

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            current = time.time_ns() // 1000
            if current <= self._last:
                current = self._last + 1
            self._last = current
            return current


class CacheStore:
    """
    Cache-first storage for entity history.

    Usage:
        client = CacheClient()
        await client.open()
        store = CacheStore(client)

        record = await store.append("RPO_ACME", EntityKind.REQUISITION, {...})
        if record is None:
            ...  # take the durable fallback path
    """

    def __init__(
        self,
        client: CacheClient,
        config: Optional[CacheConfig] = None,
        clock: Optional[MonotonicClock] = None,
    ):
        self.client = client
        self.config = config or client.config
        self.keys = TenantKeyspace(prefix=self.config.prefix)
        self.ttl = self.config.ttl
        self.clock = clock or MonotonicClock()

    # =========================================================================
    # Reference data
    # =========================================================================

    async def load_status_map(
        self,
        tenant: str,
        kind: EntityKind,
        entries: Iterable[Dict[str, Any]],
    ) -> bool:
        """
        Replace the tenant's status reference hash.

        Each entry is a status table row; it must carry `status` and usually
        `funcao_sistema`. Categories of already-cached records are unaffected.
        """
        key = self.keys.status_map(validate_tenant(tenant), kind)
        entries = list(entries)
        try:
            async with self.client.guard() as redis:
                pipe = redis.pipeline(transaction=True)
                pipe.delete(key)
                for entry in entries:
                    pipe.hset(key, entry["status"], serialize_value(entry))
                pipe.expire(key, self.ttl.REFERENCE_DATA)
                await pipe.execute()
            logger.info(f"[{tenant}] Status map loaded for {kind.value}: {len(entries)} entries")
            return True
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to load status map for {kind.value}: {e}")
            return False

    async def get_system_function(self, tenant: str, kind: EntityKind, status: str) -> Optional[str]:
        """Look up `funcao_sistema` for a status; None when unknown or unavailable."""
        if not status:
            return None
        try:
            async with self.client.guard() as redis:
                raw = await redis.hget(self.keys.status_map(tenant, kind), status)
            if not raw:
                return None
            return deserialize_value(raw).get("funcao_sistema")
        except (CacheUnavailable, ValueError, AttributeError) as e:
            logger.warning(f"[{tenant}] Could not resolve status {status!r}: {e}")
            return None

    async def resolve_categories(self, tenant: str, kind: EntityKind, status: Optional[str]) -> Tuple[Category, ...]:
        if not kind.categorized:
            return ()
        system_function = await self.get_system_function(tenant, kind, status)
        return classify_status(status, system_function)

    # =========================================================================
    # Series writes
    # =========================================================================

    async def append(
        self,
        tenant: str,
        kind: EntityKind,
        fields: Dict[str, Any],
    ) -> Optional[HistoryRecord]:
        """
        Append one history record and queue the entity for reconciliation.

        Returns the stored record, or None on any infrastructure fault.
        Raises TenantValidationError / ValueError for malformed input, before
        touching the cache.
        """
        validate_tenant(tenant)
        entity_id = fields.get(kind.id_field)
        if entity_id in (None, ""):
            raise ValueError(f"{kind.id_field} is required")
        entity_id = str(entity_id)

        categories = await self.resolve_categories(tenant, kind, fields.get(kind.status_field))
        record = HistoryRecord(
            tenant=tenant,
            kind=kind,
            entity_id=entity_id,
            cached_at=self.clock.now(),
            fields=dict(fields),
            categories=categories,
        )
        member = record.to_json()

        series_key = self.keys.series(tenant, kind, entity_id)
        try:
            async with self.client.guard() as redis:
                pipe = redis.pipeline(transaction=True)
                pipe.zadd(series_key, {member: record.cached_at})
                pipe.expire(series_key, self.ttl.SERIES)
                for category in categories:
                    index_key = self.keys.index(tenant, category, entity_id)
                    pipe.zadd(index_key, {member: record.cached_at})
                    pipe.expire(index_key, self.ttl.CATEGORY_INDEX)
                pipe.zadd(self.keys.sync_queue(tenant, kind), {entity_id: self.clock.now()})
                await pipe.execute()

            self.client.record_write()
            logger.debug(
                f"[{tenant}] Appended {kind.value} {entity_id} at {record.cached_at} "
                f"(categories: {[c.value for c in categories]})"
            )
            return record

        except CacheUnavailable as e:
            logger.warning(f"[{tenant}] Cache append failed for {kind.value} {entity_id}: {e}")
            return None

    async def patch_latest(
        self,
        tenant: str,
        entity_id: str,
        category: Category,
        partial_fields: Dict[str, Any],
        ordinal: int = 0,
    ) -> bool:
        """
        Merge `partial_fields` into the ordinal-th latest record of a category.

        The old member is removed by score from the series and from every
        index the record belongs to, and the merged member is re-added at
        the same score, so ordering is unchanged. Returns False when there is
        no record to patch or the cache is unavailable.
        """
        kind = EntityKind.REQUISITION
        try:
            current = await self._read_latest(tenant, entity_id, category, ordinal)
        except (CacheMiss, CacheUnavailable) as e:
            logger.debug(f"[{tenant}] Nothing to patch for {entity_id} in {category.value}: {e}")
            return False

        patched = current.merged(partial_fields)
        member = patched.to_json()
        score = current.cached_at
        categories = set(current.categories) | {category}

        series_key = self.keys.series(tenant, kind, entity_id)
        try:
            async with self.client.guard() as redis:
                pipe = redis.pipeline(transaction=True)
                pipe.zremrangebyscore(series_key, score, score)
                pipe.zadd(series_key, {member: score})
                pipe.expire(series_key, self.ttl.SERIES)
                for cat in categories:
                    index_key = self.keys.index(tenant, cat, entity_id)
                    pipe.zremrangebyscore(index_key, score, score)
                    pipe.zadd(index_key, {member: score})
                    pipe.expire(index_key, self.ttl.CATEGORY_INDEX)
                pipe.zadd(self.keys.sync_queue(tenant, kind), {entity_id: self.clock.now()})
                await pipe.execute()

            self.client.record_write()
            return True

        except CacheUnavailable as e:
            logger.warning(f"[{tenant}] Cache patch failed for {entity_id} in {category.value}: {e}")
            return False

    # =========================================================================
    # Series reads
    # =========================================================================

    async def read_series(self, tenant: str, kind: EntityKind, entity_id: str) -> List[HistoryRecord]:
        """
        All cached records of an entity, oldest first.

        [] only when the series is really absent; raises CacheUnavailable on
        a fault so the reconciler can tell the two apart.
        """
        async with self.client.guard() as redis:
            members = await redis.zrange(self.keys.series(tenant, kind, entity_id), 0, -1)

        if not members:
            self.client.record_miss()
            return []

        self.client.record_hit()
        return records_from_members(tenant, kind, entity_id, members)

    async def get_series(self, tenant: str, kind: EntityKind, entity_id: str) -> List[HistoryRecord]:
        """All cached records of an entity, oldest first. [] on miss or fault."""
        try:
            return await self.read_series(tenant, kind, entity_id)
        except CacheUnavailable as e:
            logger.warning(f"[{tenant}] Failed to read {kind.value} series {entity_id}: {e}")
            return []

    async def _read_latest(
        self,
        tenant: str,
        entity_id: str,
        category: Category,
        ordinal: int,
    ) -> HistoryRecord:
        if ordinal < 0:
            raise ValueError("ordinal must be >= 0")

        key = self.keys.index(tenant, category, entity_id)
        async with self.client.guard() as redis:
            members = await redis.zrevrange(key, ordinal, ordinal)

        if not members:
            self.client.record_miss()
            raise CacheMiss(key)

        self.client.record_hit()
        records = records_from_members(tenant, EntityKind.REQUISITION, entity_id, members)
        if not records:
            raise CacheMiss(key)
        return records[0]

    async def get_latest(
        self,
        tenant: str,
        entity_id: str,
        category: Category,
        ordinal: int = 0,
    ) -> Optional[HistoryRecord]:
        """
        The ordinal-th most recent record of a category index.

        0 is the latest, 1 the one before. None when the index holds fewer
        than ordinal + 1 records, has expired, or the cache is unavailable.
        """
        try:
            return await self._read_latest(tenant, entity_id, category, ordinal)
        except CacheMiss:
            return None
        except CacheUnavailable as e:
            logger.warning(f"[{tenant}] Failed to read {category.value} index for {entity_id}: {e}")
            return None

    # =========================================================================
    # Invalidation
    # =========================================================================

    async def invalidate(self, tenant: str, kind: EntityKind, entity_id: str) -> bool:
        """Delete the series and every category index of one entity."""
        keys = self.keys.entity_keys(tenant, kind, entity_id)
        try:
            async with self.client.guard() as redis:
                await redis.delete(*keys)
            logger.debug(f"[{tenant}] Invalidated cache for {kind.value} {entity_id}")
            return True
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to invalidate {kind.value} {entity_id}: {e}")
            return False

    async def clear_series_by_prefix(self, tenant: str, kind: EntityKind) -> bool:
        """
        Delete every series of a kind (and, for requisitions, every index).

        Keys are collected with SCAN (`scan_count` per step), never KEYS.
        """
        validate_tenant(tenant)
        patterns = [self.keys.series_pattern(tenant, kind)]
        if kind.categorized:
            patterns.append(self.keys.index_pattern(tenant))

        deleted = 0
        try:
            async with self.client.guard() as redis:
                for pattern in patterns:
                    keys = []
                    async for key in redis.scan_iter(match=pattern, count=self.config.scan_count):
                        keys.append(key)

                    if keys:
                        deleted += await redis.delete(*keys)
            logger.info(f"[{tenant}] Cleared {deleted} {kind.value} cache keys")
            return True
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to clear {kind.value} series: {e}")
            return False

    # =========================================================================
    # Sync queue
    # =========================================================================

    async def mark_pending(self, tenant: str, kind: EntityKind, entity_id: str) -> bool:
        """Queue an entity (again). Re-marking only advances its fence."""
        try:
            async with self.client.guard() as redis:
                await redis.zadd(self.keys.sync_queue(tenant, kind), {entity_id: self.clock.now()})
            return True
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to queue {kind.value} {entity_id}: {e}")
            return False

    async def pending_entries(self, tenant: str, kind: EntityKind) -> List[Tuple[str, float]]:
        """Queued entity ids with the fence (mark time) of their latest mark."""
        try:
            async with self.client.guard() as redis:
                return await redis.zrange(self.keys.sync_queue(tenant, kind), 0, -1, withscores=True)
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to read {kind.value} sync queue: {e}")
            return []

    async def pending_ids(self, tenant: str, kind: EntityKind) -> List[str]:
        return [entity_id for entity_id, _ in await self.pending_entries(tenant, kind)]

    async def remove_if_unchanged(
        self,
        tenant: str,
        kind: EntityKind,
        entity_id: str,
        fence: float,
    ) -> bool:
        """
        Dequeue an entity only if it was not re-marked since `fence` was read.

        Runs as a WATCH/MULTI transaction on the queue key. Returns False when
        the entity was re-marked (it stays queued for the next cycle) or the
        cache is unavailable.
        """
        key = self.keys.sync_queue(tenant, kind)
        try:
            async with self.client.guard() as redis:
                async with redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        current = await pipe.zscore(key, entity_id)
                        if current is None:
                            return True
                        if current != fence:
                            return False
                        pipe.multi()
                        pipe.zrem(key, entity_id)
                        await pipe.execute()
                        return True
                    except WatchError:
                        logger.debug(f"[{tenant}] {kind.value} {entity_id} re-queued during flush")
                        return False
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to dequeue {kind.value} {entity_id}: {e}")
            return False

    async def mark_failed(self, tenant: str, kind: EntityKind, entity_id: str) -> bool:
        """Move an entity from the sync queue to the failed set."""
        try:
            async with self.client.guard() as redis:
                pipe = redis.pipeline(transaction=True)
                pipe.zrem(self.keys.sync_queue(tenant, kind), entity_id)
                pipe.sadd(self.keys.sync_failed(tenant, kind), entity_id)
                await pipe.execute()
            return True
        except CacheUnavailable as e:
            logger.error(f"[{tenant}] Failed to mark {kind.value} {entity_id} as failed: {e}")
            return False

    async def failed_entities(self, tenant: str, kind: EntityKind) -> List[str]:
        try:
            async with self.client.guard() as redis:
                return sorted(await redis.smembers(self.keys.sync_failed(tenant, kind)))
        except CacheUnavailable:
            return []

    # =========================================================================
    # Fallback markers (audit only)
    # =========================================================================

    async def record_fallback(self, tenant: str, kind: EntityKind, entity_id: str) -> bool:
        try:
            async with self.client.guard() as redis:
                await redis.sadd(self.keys.fallback_log(tenant, kind), entity_id)
            return True
        except CacheUnavailable as e:
            logger.warning(f"[{tenant}] Could not record fallback for {kind.value} {entity_id}: {e}")
            return False

    async def fallback_entities(self, tenant: str, kind: EntityKind) -> List[str]:
        try:
            async with self.client.guard() as redis:
                return sorted(await redis.smembers(self.keys.fallback_log(tenant, kind)))
        except CacheUnavailable:
            return []

    async def health_check(self) -> Dict[str, Any]:
        return await self.client.health_check()
