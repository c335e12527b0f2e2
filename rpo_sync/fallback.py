"""
Fallback Writer

Durable path for request-time writes when the cache path fails. Rows are
committed straight to the tenant's history table; the entity is not queued
for reconciliation since the durable store already holds the row.
"""

import logging
from typing import Any, Dict, Optional

from rpo_sync.cache.store import CacheStore
from rpo_sync.database.schema import TenantSchemaRegistry
from rpo_sync.database.session import DurableClient
from rpo_sync.errors import DurableReadError, DurableWriteError
from rpo_sync.models import Category, EntityKind, project_fields
from rpo_sync.utils.tenants import validate_tenant

logger = logging.getLogger(__name__)


class FallbackWriter:
    """
    Writes to the durable store on behalf of a failed cache operation.

    Every successful fallback is recorded in the tenant's fallback marker
    set (best effort; the cache is likely down when this runs).
    """

    def __init__(
        self,
        durable: DurableClient,
        store: CacheStore,
        schemas: Optional[TenantSchemaRegistry] = None,
    ):
        self.durable = durable
        self.store = store
        self.schemas = schemas or TenantSchemaRegistry(durable)

    async def _columns(self, tenant: str, table: str):
        try:
            columns = await self.schemas.describe(tenant, table)
        except DurableReadError as e:
            raise DurableWriteError(tenant, table, str(e), cause=e) from e
        if not columns:
            raise DurableWriteError(tenant, table, "table has no known columns")
        return columns

    async def write(self, tenant: str, kind: EntityKind, fields: Dict[str, Any]) -> None:
        """
        Insert one history row with `created_at = now()`.

        Raises DurableWriteError if the row could not be committed.
        """
        validate_tenant(tenant)
        table = kind.history_table
        columns = await self._columns(tenant, table)
        values = project_fields(fields, columns)

        try:
            await self.durable.insert_row(tenant, table, values, columns=columns)
        except DurableWriteError:
            self.schemas.invalidate(tenant, table)
            raise

        entity_id = str(fields.get(kind.id_field, ""))
        logger.info(f"[{tenant}] Fallback insert into {table} for {entity_id}")
        if entity_id:
            await self.store.record_fallback(tenant, kind, entity_id)

    async def patch_latest(
        self,
        tenant: str,
        entity_id: str,
        category: Category,
        partial_fields: Dict[str, Any],
        ordinal: int = 0,
    ) -> bool:
        """
        Patch the ordinal-th latest durable row of a category.

        The entity's cache keys are invalidated afterwards so the next read
        cannot serve the pre-patch record. False when no row matched.
        """
        validate_tenant(tenant)
        kind = EntityKind.REQUISITION
        columns = await self._columns(tenant, kind.history_table)
        values = project_fields(partial_fields, columns)
        values.pop("updated_at", None)

        try:
            patched = await self.durable.update_latest_in_category(
                tenant, columns, entity_id, category, values, ordinal=ordinal
            )
        except DurableWriteError:
            self.schemas.invalidate(tenant, kind.history_table)
            raise

        if not patched:
            logger.info(f"[{tenant}] No durable {category.value} row #{ordinal} for {entity_id}")
            return False

        await self.store.record_fallback(tenant, kind, entity_id)
        await self.store.invalidate(tenant, kind, entity_id)
        return True

    async def update_row(
        self,
        tenant: str,
        kind: EntityKind,
        row_id: int,
        fields: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Full durable update of one history row by id, then drop the entity's cache."""
        validate_tenant(tenant)
        table = kind.history_table
        columns = await self._columns(tenant, table)
        values = project_fields(fields, columns)
        values.pop("updated_at", None)

        row = await self.durable.update_row(tenant, table, columns, row_id, values)
        if row is None:
            logger.info(f"[{tenant}] No {table} row with id {row_id}")
            return None

        entity_id = row.get(kind.id_field)
        if entity_id is not None:
            await self.store.invalidate(tenant, kind, str(entity_id))
        return row
