"""
Tenant Discovery

Active tenants come from the provisioning file (`schemas.json`):

    {"schemas": [{"name": "RPO_ACME", "active": true}, ...]}

When it lists no active tenant, the durable catalog is searched for prefixed
schemas that contain the marker table.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from rpo_sync.database.session import DurableClient
from rpo_sync.models import EntityKind
from rpo_sync.utils.config import Settings, get_settings
from rpo_sync.utils.tenants import is_valid_tenant

logger = logging.getLogger(__name__)

MARKER_TABLE = EntityKind.REQUISITION.history_table


class TenantDiscovery:
    """Keeps the list of tenants the reconciliation worker visits."""

    def __init__(
        self,
        durable: DurableClient,
        schemas_file: Optional[str] = None,
        prefix: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.durable = durable
        self.schemas_file = Path(schemas_file or settings.SCHEMAS_FILE)
        self.prefix = prefix if prefix is not None else settings.TENANT_SCHEMA_PREFIX
        self._tenants: List[str] = []

    @property
    def tenants(self) -> List[str]:
        return list(self._tenants)

    def _read_schemas_file(self) -> List[str]:
        if not self.schemas_file.exists():
            return []

        config = json.loads(self.schemas_file.read_text(encoding="utf-8"))
        names = []
        for entry in config.get("schemas", []):
            if not entry.get("active"):
                continue
            name = entry.get("name", "")
            if is_valid_tenant(name):
                names.append(name)
            else:
                logger.warning(f"Ignoring invalid schema name in {self.schemas_file}: {name!r}")
        return names

    async def refresh(self) -> List[str]:
        """
        Reload the tenant list.

        On any failure the previous list is kept, so a bad file or an
        unreachable catalog never stops reconciliation of known tenants.
        """
        try:
            tenants = self._read_schemas_file()
            if not tenants:
                tenants = await self.durable.list_schemas_with_table(MARKER_TABLE, self.prefix)
        except (OSError, ValueError, TypeError, AttributeError, SQLAlchemyError) as e:
            logger.error(f"Tenant discovery failed, keeping {len(self._tenants)} known tenants: {e}")
            return self.tenants

        if tenants != self._tenants:
            logger.info(f"Active tenants: {', '.join(tenants) if tenants else '(none)'}")
        self._tenants = tenants
        return self.tenants
