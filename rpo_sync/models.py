"""
Domain Models

Entity families, status categories and the immutable history record that
flows through the cache tier and the reconciliation worker.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rpo_sync.utils.serialization import serialize_value, deserialize_value

logger = logging.getLogger(__name__)

# Reserved payload keys written next to the record fields
CACHED_AT_FIELD = "cached_at"
CATEGORIES_FIELD = "_categories"

# Columns owned by the durable store, never written from cached data
DURABLE_MANAGED_COLUMNS = ("id", "created_at")

PROPOSAL_STATUS = "PROPOSTA"


class EntityKind(str, Enum):
    """Entity families with an append-only history."""
    REQUISITION = "requisition"
    CANDIDATE = "candidate"

    @property
    def id_field(self) -> str:
        return "requisicao" if self is EntityKind.REQUISITION else "id_candidato"

    @property
    def status_field(self) -> str:
        return "status" if self is EntityKind.REQUISITION else "status_candidato"

    @property
    def history_table(self) -> str:
        return "historico_vagas" if self is EntityKind.REQUISITION else "historico_candidatos"

    @property
    def status_table(self) -> str:
        return "status_vagas" if self is EntityKind.REQUISITION else "status_candidatos"

    @property
    def categorized(self) -> bool:
        """Only requisitions maintain category indices."""
        return self is EntityKind.REQUISITION


class Category(str, Enum):
    """Status categories backed by a per-entity index."""
    PROPOSAL = "proposal"
    SHORTLIST = "shortlist"
    CANCELLED = "cancelled"
    CLOSED = "closed"

    @property
    def marker(self) -> str:
        """Substring of `funcao_sistema` that places a status in this category."""
        return _CATEGORY_MARKERS[self]


_CATEGORY_MARKERS = {
    Category.PROPOSAL: "proposta",
    Category.SHORTLIST: "shortlist",
    Category.CANCELLED: "cancelada",
    Category.CLOSED: "fechada",
}


class SyncState(Enum):
    """Durability state of a cached entity."""
    PENDING_SYNC = "pending_sync"   # cached, not yet confirmed durable
    SYNCED = "synced"               # latest cached record inserted durably
    FAILED = "failed"               # retry cap exhausted, moved out of the queue


def classify_status(status: Optional[str], system_function: Optional[str]) -> Tuple[Category, ...]:
    """
    Resolve the categories a status belongs to.

    `system_function` is the tenant's `funcao_sistema` for the status. The
    literal PROPOSTA status is a proposal even without a reference mapping.
    """
    function_lower = (system_function or "").lower()
    categories = []
    for category in Category:
        if category is Category.PROPOSAL and status == PROPOSAL_STATUS:
            categories.append(category)
        elif category.marker in function_lower:
            categories.append(category)
    return tuple(categories)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class HistoryRecord:
    """
    Snapshot of one entity's fields at one point in time.

    Records are never updated in place: `merged()` returns a new record with
    the same `cached_at`, which the cache store swaps in at the same score.
    """
    tenant: str
    kind: EntityKind
    entity_id: str
    cached_at: int
    fields: Dict[str, Any] = field(default_factory=dict)
    categories: Tuple[Category, ...] = ()

    @property
    def status(self) -> Optional[str]:
        return self.fields.get(self.kind.status_field)

    def payload(self) -> Dict[str, Any]:
        """Flat view: fields plus `cached_at`, as stored in the cache."""
        data = dict(self.fields)
        data[CACHED_AT_FIELD] = self.cached_at
        return data

    def to_json(self) -> str:
        """Deterministic serialization; identical records produce identical members."""
        data = self.payload()
        data[CATEGORIES_FIELD] = [c.value for c in self.categories]
        return serialize_value(data)

    @classmethod
    def from_json(
        cls,
        tenant: str,
        kind: EntityKind,
        entity_id: str,
        raw: str,
    ) -> "HistoryRecord":
        data = deserialize_value(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Malformed history record for {tenant}/{entity_id}")

        cached_at = int(data.pop(CACHED_AT_FIELD))
        categories = tuple(Category(c) for c in data.pop(CATEGORIES_FIELD, []))
        return cls(
            tenant=tenant,
            kind=kind,
            entity_id=entity_id,
            cached_at=cached_at,
            fields=data,
            categories=categories,
        )

    def merged(self, partial_fields: Dict[str, Any], updated_at: Optional[str] = None) -> "HistoryRecord":
        """Return a copy with `partial_fields` laid over the current fields."""
        fields = dict(self.fields)
        fields.update(partial_fields)
        fields["updated_at"] = updated_at or utcnow_iso()
        return replace(self, fields=fields)

    def project(self, columns: Iterable[str]) -> Dict[str, Any]:
        return project_fields(self.fields, columns)


def project_fields(fields: Dict[str, Any], columns: Iterable[str]) -> Dict[str, Any]:
    """
    Keep only fields that are durable columns.

    `id` and `created_at` are always dropped; the durable store assigns them.
    None values are dropped so column defaults apply.
    """
    projected = {}
    for column in columns:
        if column in DURABLE_MANAGED_COLUMNS:
            continue
        if column in fields and fields[column] is not None:
            projected[column] = fields[column]
    return projected


def records_from_members(
    tenant: str,
    kind: EntityKind,
    entity_id: str,
    members: List[str],
) -> List[HistoryRecord]:
    """Decode sorted-set members, skipping any that cannot be parsed."""
    records = []
    for raw in members:
        try:
            records.append(HistoryRecord.from_json(tenant, kind, entity_id, raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping corrupt history member for {tenant}/{entity_id}: {e}")
    return records
