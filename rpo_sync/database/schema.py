"""
Tenant Schema Registry

Known columns of each tenant's history tables. Column sets vary per tenant
and change when a schema is altered, so reflections are cached per
(tenant, table) and dropped explicitly when a write reveals a mismatch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from sqlalchemy.types import TypeEngine

from rpo_sync.database.session import DurableClient
from rpo_sync.utils.tenants import validate_tenant

logger = logging.getLogger(__name__)


@dataclass
class TenantSchema:
    """Reflected columns per table for one tenant."""
    tenant: str
    tables: Dict[str, Dict[str, TypeEngine]] = field(default_factory=dict)

    def columns(self, table: str) -> Tuple[str, ...]:
        return tuple(self.tables.get(table, {}))

    def has_table(self, table: str) -> bool:
        return bool(self.tables.get(table))


class TenantSchemaRegistry:
    """
    Column cache in front of the durable catalog.

    An empty result (table not provisioned) is not cached, so the next lookup
    queries the catalog again. Catalog failures raise DurableReadError and are not cached
    either.
    """

    def __init__(self, durable: DurableClient):
        self.durable = durable
        self._schemas: Dict[str, TenantSchema] = {}
        self._lock = asyncio.Lock()

    async def describe(self, tenant: str, table: str) -> Dict[str, TypeEngine]:
        """Column name -> reflected type, in ordinal order. {} if the table does not exist."""
        validate_tenant(tenant)
        schema = self._schemas.get(tenant)
        if schema and schema.has_table(table):
            return schema.tables[table]

        columns = await self.durable.describe_table(tenant, table)

        if not columns:
            logger.warning(f"[{tenant}] Table {table} has no known columns")
            return {}

        async with self._lock:
            self._schemas.setdefault(tenant, TenantSchema(tenant)).tables[table] = columns
        return columns

    async def get_columns(self, tenant: str, table: str) -> Tuple[str, ...]:
        return tuple(await self.describe(tenant, table))

    def get_schema(self, tenant: str) -> Optional[TenantSchema]:
        return self._schemas.get(tenant)

    def invalidate(self, tenant: str, table: Optional[str] = None):
        """Forget cached columns of one table, or of the whole tenant."""
        schema = self._schemas.get(tenant)
        if schema is None:
            return
        if table is None:
            del self._schemas[tenant]
        else:
            schema.tables.pop(table, None)
        logger.debug(f"[{tenant}] Column cache invalidated for {table or 'all tables'}")
