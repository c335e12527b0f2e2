"""
Tenant Keyspace

Every cache-resident key of a tenant lives under `{prefix}:{tenant}:` so a
whole tenant (or one kind of key inside it) can be matched with a wildcard
and cleaned up with incremental SCAN.

    {prefix}:{tenant}:series:{kind}:{entity}     history series (sorted set)
    {prefix}:{tenant}:idx:{category}:{entity}    category index (sorted set)
    {prefix}:{tenant}:syncqueue:{kind}           pending-sync queue (sorted set)
    {prefix}:{tenant}:syncfailed:{kind}          retry-exhausted ids (set)
    {prefix}:{tenant}:statusmap:{kind}           status -> funcao_sistema (hash)
    {prefix}:{tenant}:fallback:{kind}            ids written on the fallback path (set)
"""

from dataclasses import dataclass
from typing import Dict, List

from rpo_sync.models import Category, EntityKind


@dataclass(frozen=True)
class TenantKeyspace:
    """Key builder bound to a global prefix."""

    prefix: str = "RPO_V5"

    def _make_key(self, tenant: str, *parts: str) -> str:
        return ":".join([self.prefix, tenant, *(str(p) for p in parts)])

    # Entity data

    def series(self, tenant: str, kind: EntityKind, entity_id: str) -> str:
        return self._make_key(tenant, "series", kind.value, entity_id)

    def index(self, tenant: str, category: Category, entity_id: str) -> str:
        return self._make_key(tenant, "idx", category.value, entity_id)

    def indices(self, tenant: str, entity_id: str) -> Dict[Category, str]:
        return {category: self.index(tenant, category, entity_id) for category in Category}

    def entity_keys(self, tenant: str, kind: EntityKind, entity_id: str) -> List[str]:
        """Series plus every category index that can exist for the entity."""
        keys = [self.series(tenant, kind, entity_id)]
        if kind.categorized:
            keys.extend(self.indices(tenant, entity_id).values())
        return keys

    # Sync control

    def sync_queue(self, tenant: str, kind: EntityKind) -> str:
        return self._make_key(tenant, "syncqueue", kind.value)

    def sync_failed(self, tenant: str, kind: EntityKind) -> str:
        return self._make_key(tenant, "syncfailed", kind.value)

    def fallback_log(self, tenant: str, kind: EntityKind) -> str:
        return self._make_key(tenant, "fallback", kind.value)

    # Reference data

    def status_map(self, tenant: str, kind: EntityKind) -> str:
        return self._make_key(tenant, "statusmap", kind.value)

    # Wildcards

    def series_pattern(self, tenant: str, kind: EntityKind) -> str:
        return self._make_key(tenant, "series", kind.value, "*")

    def index_pattern(self, tenant: str) -> str:
        return self._make_key(tenant, "idx", "*")

    def tenant_pattern(self, tenant: str) -> str:
        return self._make_key(tenant, "*")
