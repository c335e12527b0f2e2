"""
Reconciliation Worker

Drains each tenant's sync queues into the durable store. For every queued
entity the latest cached record is projected onto the table's columns and
inserted as a new history row; the entity is dequeued only if it was not
re-marked while the insert was in flight.

Transitions appended between two cycles collapse into one durable row
carrying the latest state.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from rpo_sync.cache.store import CacheStore
from rpo_sync.database.schema import TenantSchemaRegistry
from rpo_sync.database.session import DurableClient
from rpo_sync.errors import CacheUnavailable, DurableWriteError, RPOSyncError
from rpo_sync.models import EntityKind, SyncState
from rpo_sync.utils.config import Settings, get_settings
from rpo_sync.worker.discovery import TenantDiscovery
from rpo_sync.worker.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

# Recently synced entities kept for sync_status(); older ones are forgotten
SYNCED_HISTORY_SIZE = 1000


@dataclass
class WorkerStats:
    """Counters since process start."""
    requisitions_synced: int = 0
    candidates_synced: int = 0
    errors: int = 0
    cycles: int = 0
    skipped_cycles: int = 0
    stale_dropped: int = 0

    def record_synced(self, kind: EntityKind):
        if kind is EntityKind.REQUISITION:
            self.requisitions_synced += 1
        else:
            self.candidates_synced += 1


@dataclass
class SyncStatus:
    """Last known durability state of one entity."""
    state: SyncState
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: float = 0.0


class ReconciliationWorker:
    """
    Usage:
        worker = ReconciliationWorker(store, durable, discovery)
        await discovery.refresh()
        await worker.run_cycle()

    Or periodically:
        task = worker.schedule(interval=1.0)
        task.start()
    """

    def __init__(
        self,
        store: CacheStore,
        durable: DurableClient,
        discovery: TenantDiscovery,
        schemas: Optional[TenantSchemaRegistry] = None,
        max_attempts: Optional[int] = None,
        settings: Optional[Settings] = None,
        synced_history: int = SYNCED_HISTORY_SIZE,
    ):
        settings = settings or get_settings()
        self.store = store
        self.durable = durable
        self.discovery = discovery
        self.schemas = schemas or TenantSchemaRegistry(durable)
        self.max_attempts = max_attempts if max_attempts is not None else settings.SYNC_MAX_ATTEMPTS
        self.stats = WorkerStats()
        # PENDING_SYNC and FAILED entities; SYNCED ones move to the bounded map
        self._statuses: Dict[Tuple[str, EntityKind, str], SyncStatus] = {}
        self._synced: "OrderedDict[Tuple[str, EntityKind, str], SyncStatus]" = OrderedDict()
        self._synced_history = synced_history
        self._task: Optional[PeriodicTask] = None

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule(self, interval: float) -> PeriodicTask:
        """Wrap `run_cycle` in a skip-if-running periodic task."""
        self._task = PeriodicTask("reconciliation", interval, self.run_cycle)
        return self._task

    def get_stats(self) -> Dict[str, Any]:
        if self._task is not None:
            self.stats.skipped_cycles = self._task.skipped
        return asdict(self.stats)

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self):
        """Visit every active tenant once, requisitions before candidates."""
        for tenant in self.discovery.tenants:
            for kind in EntityKind:
                try:
                    await self.sync_kind(tenant, kind)
                except (RPOSyncError, SQLAlchemyError) as e:
                    self.stats.errors += 1
                    logger.error(f"[{tenant}] {kind.value} sync failed: {e}")
        self.stats.cycles += 1

    async def sync_kind(self, tenant: str, kind: EntityKind) -> int:
        """Flush one tenant's queue for one kind. Returns the number of rows inserted."""
        entries = await self.store.pending_entries(tenant, kind)
        if not entries:
            return 0

        columns = await self.schemas.describe(tenant, kind.history_table)
        if not columns:
            logger.warning(f"[{tenant}] {kind.history_table} not provisioned, skipping {len(entries)} queued")
            return 0

        logger.info(f"[{tenant}] Syncing {len(entries)} {kind.value} entities")
        synced = 0
        for entity_id, fence in entries:
            if await self._sync_entity(tenant, kind, entity_id, fence, columns):
                synced += 1
        return synced

    async def _sync_entity(
        self,
        tenant: str,
        kind: EntityKind,
        entity_id: str,
        fence: float,
        columns,
    ) -> bool:
        try:
            series = await self.store.read_series(tenant, kind, entity_id)
        except CacheUnavailable as e:
            # Not proof the series is gone; keep the entity queued
            self.stats.errors += 1
            logger.warning(f"[{tenant}] Could not read {kind.value} {entity_id}, retrying next cycle: {e}")
            return False

        if not series:
            await self._drop_stale(tenant, kind, entity_id, fence, "no cached history")
            return False

        values = series[-1].project(columns)
        if not values.get(kind.id_field):
            await self._drop_stale(tenant, kind, entity_id, fence, f"{kind.id_field} missing after projection")
            return False

        try:
            await self.durable.insert_row(tenant, kind.history_table, values, columns=columns)
        except DurableWriteError as e:
            self._record_failure(tenant, kind, entity_id, e)
            # Columns may have changed under us
            self.schemas.invalidate(tenant, kind.history_table)
            await self._enforce_cap(tenant, kind, entity_id)
            return False

        self.stats.record_synced(kind)
        if await self.store.remove_if_unchanged(tenant, kind, entity_id, fence):
            self._set_status(tenant, kind, entity_id, SyncState.SYNCED)
        else:
            # Re-marked during the flush; the next cycle inserts the newer record
            self._set_status(tenant, kind, entity_id, SyncState.PENDING_SYNC)
        return True

    async def _drop_stale(self, tenant: str, kind: EntityKind, entity_id: str, fence: float, reason: str):
        if await self.store.remove_if_unchanged(tenant, kind, entity_id, fence):
            self.stats.stale_dropped += 1
            self._forget(tenant, kind, entity_id)
            logger.debug(f"[{tenant}] Dropped queued {kind.value} {entity_id}: {reason}")

    # =========================================================================
    # Per-entity state
    # =========================================================================

    def _set_status(self, tenant: str, kind: EntityKind, entity_id: str, state: SyncState, **changes):
        key = (tenant, kind, entity_id)
        status = self._statuses.pop(key, None) or self._synced.pop(key, None) or SyncStatus(state=state)
        status.state = state
        if state is SyncState.SYNCED:
            status.attempts = 0
            status.last_error = None
        for name, value in changes.items():
            setattr(status, name, value)
        status.updated_at = time.time()

        if state is SyncState.SYNCED:
            self._synced[key] = status
            while len(self._synced) > self._synced_history:
                self._synced.popitem(last=False)
        else:
            self._statuses[key] = status
        return status

    def _forget(self, tenant: str, kind: EntityKind, entity_id: str):
        self._statuses.pop((tenant, kind, entity_id), None)
        self._synced.pop((tenant, kind, entity_id), None)

    def _record_failure(self, tenant: str, kind: EntityKind, entity_id: str, error: DurableWriteError):
        self.stats.errors += 1
        previous = self._statuses.get((tenant, kind, entity_id))
        attempts = (previous.attempts if previous else 0) + 1
        self._set_status(
            tenant, kind, entity_id, SyncState.PENDING_SYNC,
            attempts=attempts, last_error=str(error),
        )
        logger.error(f"[{tenant}] Failed to sync {kind.value} {entity_id} (attempt {attempts}): {error}")

    async def _enforce_cap(self, tenant: str, kind: EntityKind, entity_id: str):
        if not self.max_attempts:
            return
        status = self._statuses[(tenant, kind, entity_id)]
        if status.attempts < self.max_attempts:
            return
        if await self.store.mark_failed(tenant, kind, entity_id):
            self._set_status(tenant, kind, entity_id, SyncState.FAILED)
            logger.error(
                f"[{tenant}] Giving up on {kind.value} {entity_id} after {status.attempts} attempts"
            )

    def sync_status(self, tenant: str, kind: EntityKind, entity_id: str) -> Optional[SyncStatus]:
        """
        Durability state seen by this worker.

        None if it never handled the entity, or synced it longer ago than the
        last `synced_history` entities.
        """
        key = (tenant, kind, entity_id)
        return self._statuses.get(key) or self._synced.get(key)
