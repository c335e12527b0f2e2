"""
Durable store access.

- DurableClient: async SQLAlchemy engine with open/close lifecycle
- TenantSchemaRegistry: cached column sets per tenant table
"""

from rpo_sync.database.session import (
    DurableClient,
    create_durable_engine,
    get_database_url,
)
from rpo_sync.database.schema import TenantSchema, TenantSchemaRegistry

__all__ = [
    "DurableClient",
    "create_durable_engine",
    "get_database_url",
    "TenantSchema",
    "TenantSchemaRegistry",
]
