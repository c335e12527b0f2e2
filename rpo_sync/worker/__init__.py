"""
Background reconciliation.

- PeriodicTask: skip-if-running interval scheduler
- TenantDiscovery: active tenant list from schemas.json or the catalog
- ReconciliationWorker: drains sync queues into the durable store
"""

from rpo_sync.worker.scheduler import PeriodicTask, TaskState
from rpo_sync.worker.discovery import TenantDiscovery
from rpo_sync.worker.reconciler import ReconciliationWorker, SyncStatus, WorkerStats

__all__ = [
    "PeriodicTask",
    "TaskState",
    "TenantDiscovery",
    "ReconciliationWorker",
    "SyncStatus",
    "WorkerStats",
]
