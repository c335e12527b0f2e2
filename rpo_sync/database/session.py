"""
Durable Store Session Management

Explicitly constructed async engine for the relational source of truth.
Designed for PostgreSQL (asyncpg) in production and SQLite (aiosqlite) for
local development, where each tenant schema is an attached database file.

Tables are per-tenant and their column sets vary, so statements are built
from reflected column names with lightweight `table()` constructs rather
than ORM models.
"""

import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Date, DateTime, column, event, func, inspect, or_, select, table, text, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.sql.expression import TableClause
from sqlalchemy.types import TypeEngine

from rpo_sync.errors import DurableReadError, DurableWriteError
from rpo_sync.models import PROPOSAL_STATUS, Category, EntityKind
from rpo_sync.utils.config import Settings, get_settings
from rpo_sync.utils.tenants import is_valid_tenant, validate_tenant

logger = logging.getLogger(__name__)

# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def _to_async_driver(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def get_database_url(settings: Optional[Settings] = None) -> str:
    """
    Get async database URL from settings.

    Priority:
    1. DATABASE_URL
    2. POSTGRES_URL (alternative)
    3. SQLite fallback for local development
    """
    settings = settings or get_settings()

    if settings.DATABASE_URL:
        logger.info("Using database from DATABASE_URL")
        return _to_async_driver(settings.DATABASE_URL)

    if settings.POSTGRES_URL:
        logger.info("Using database from POSTGRES_URL")
        return _to_async_driver(settings.POSTGRES_URL)

    logger.warning(f"No DATABASE_URL found, using SQLite: {settings.SQLITE_PATH}")
    return f"sqlite+aiosqlite:///{settings.SQLITE_PATH}"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def _attach_sqlite_tenants(engine: AsyncEngine, database_path: str, tenant_prefix: str) -> None:
    """
    Attach every `{prefix}*.db` file next to the main database as a schema.

    SQLite has no schemas; attached databases are addressed the same way
    (`"RPO_ACME".historico_vagas`), so the same statements run on both.
    """
    directory = Path(database_path).resolve().parent

    @event.listens_for(engine.sync_engine, "connect")
    def attach_tenant_databases(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        for path in sorted(directory.glob(f"{tenant_prefix}*.db")):
            name = path.stem
            if not is_valid_tenant(name):
                continue
            escaped = str(path).replace("'", "''")
            cursor.execute(f"ATTACH DATABASE '{escaped}' AS \"{name}\"")
        cursor.close()


def create_durable_engine(url: str, settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Create async engine with appropriate settings.

    PostgreSQL: Connection pooling, pre-ping
    SQLite: Tenant databases attached on connect
    """
    settings = settings or get_settings()
    parsed = make_url(url)

    if parsed.get_backend_name() == "postgresql":
        engine = create_async_engine(
            url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=1800,          # Recycle connections after 30 min
            pool_pre_ping=True,         # Verify connections before use
            echo=settings.SQL_DEBUG,
        )
        logger.info("Created PostgreSQL engine with connection pooling")
    else:
        engine = create_async_engine(url, echo=settings.SQL_DEBUG)
        if parsed.database and parsed.database != ":memory:":
            _attach_sqlite_tenants(engine, parsed.database, settings.TENANT_SCHEMA_PREFIX)
        logger.info("Created SQLite engine")

    return engine


# =============================================================================
# DURABLE CLIENT
# =============================================================================

# Column names, or names mapped to their reflected types
Columns = Union[Sequence[str], Mapping[str, TypeEngine]]


def _tenant_table(tenant: str, name: str, columns: Columns) -> TableClause:
    if isinstance(columns, Mapping):
        return table(name, *(column(c, t) for c, t in columns.items()), schema=tenant)
    return table(name, *(column(c) for c in columns), schema=tenant)


def _parse_timestamp(value: str) -> datetime:
    # fromisoformat() only accepts a trailing "Z" from Python 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def coerce_values(values: Dict[str, Any], columns: Columns) -> Dict[str, Any]:
    """
    Convert ISO-8601 strings bound to date/timestamp columns.

    Cached records carry timestamps as JSON strings; typed drivers (asyncpg,
    SQLAlchemy's SQLite DateTime) only accept date/datetime objects.
    Values that do not parse are passed through for the database to reject.
    """
    if not isinstance(columns, Mapping):
        return dict(values)

    coerced = dict(values)
    for name, value in values.items():
        col_type = columns.get(name)
        if not isinstance(value, str) or col_type is None:
            continue
        if isinstance(col_type, DateTime):
            try:
                parsed = _parse_timestamp(value)
            except ValueError:
                continue
            if parsed.tzinfo is not None and not col_type.timezone:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            coerced[name] = parsed
        elif isinstance(col_type, Date):
            try:
                coerced[name] = date.fromisoformat(value[:10])
            except ValueError:
                continue
    return coerced


class DurableClient:
    """
    Process-wide handle on the durable relational store.

    Construct once at startup, `await open()`, pass into the fallback writer
    and the reconciliation worker, and `await close()` on shutdown.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.url = url
        self._engine = engine
        self._owns_engine = engine is None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DurableClient is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        if self._engine is not None:
            return
        url = _to_async_driver(self.url) if self.url else get_database_url(self.settings)
        self._engine = create_durable_engine(url, self.settings)

    async def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
            logger.info("Durable store connections closed")

    async def health_check(self) -> Dict[str, Any]:
        try:
            async with self.engine.connect() as conn:
                now = (await conn.execute(text("SELECT CURRENT_TIMESTAMP"))).scalar()
            return {"connected": True, "time": str(now)}
        except SQLAlchemyError as e:
            return {"connected": False, "error": str(e)}

    # =========================================================================
    # Catalog
    # =========================================================================

    async def describe_table(self, tenant: str, table_name: str) -> Dict[str, TypeEngine]:
        """Reflected column types of a tenant table in ordinal order; {} if it does not exist."""
        validate_tenant(tenant)

        def _columns(sync_conn):
            try:
                return {c["name"]: c["type"] for c in inspect(sync_conn).get_columns(table_name, schema=tenant)}
            except NoSuchTableError:
                return {}

        try:
            async with self.engine.connect() as conn:
                return await conn.run_sync(_columns)
        except SQLAlchemyError as e:
            raise DurableReadError(tenant, table_name, str(e), cause=e) from e

    async def get_table_columns(self, tenant: str, table_name: str) -> List[str]:
        return list(await self.describe_table(tenant, table_name))

    async def list_schemas_with_table(self, table_name: str, prefix: str) -> List[str]:
        """Schemas starting with `prefix` that contain `table_name`."""

        def _reflect(sync_conn):
            inspector = inspect(sync_conn)
            return sorted(
                schema for schema in inspector.get_schema_names()
                if schema.startswith(prefix)
                and is_valid_tenant(schema)
                and inspector.has_table(table_name, schema=schema)
            )

        async with self.engine.connect() as conn:
            return await conn.run_sync(_reflect)

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert_row(
        self,
        tenant: str,
        table_name: str,
        values: Dict[str, Any],
        columns: Optional[Columns] = None,
    ) -> None:
        """
        Insert one history row with `created_at` set by the database.

        Each status transition is its own row; there is no upsert. Passing the
        reflected `columns` binds values with their column types.
        """
        validate_tenant(tenant)
        if columns:
            target = _tenant_table(tenant, table_name, columns)
            values = coerce_values(values, columns)
        else:
            target = _tenant_table(tenant, table_name, [*values.keys(), "created_at"])
        stmt = target.insert().values(**values, created_at=func.now())

        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise DurableWriteError(tenant, table_name, str(e), cause=e) from e

    async def update_row(
        self,
        tenant: str,
        table_name: str,
        columns: Columns,
        row_id: int,
        values: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Update one row by primary key; returns the updated row or None."""
        validate_tenant(tenant)
        target = _tenant_table(tenant, table_name, columns)
        assignments = coerce_values(values, columns)
        if "updated_at" in columns:
            assignments["updated_at"] = func.now()
        if not assignments:
            raise ValueError("nothing to update")

        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(target).where(target.c.id == row_id).values(**assignments)
                )
                if result.rowcount == 0:
                    return None
                row = await conn.execute(select(target).where(target.c.id == row_id))
                found = row.mappings().first()
                return dict(found) if found else None
        except SQLAlchemyError as e:
            raise DurableWriteError(tenant, table_name, str(e), cause=e) from e

    # =========================================================================
    # Category queries (durable fallback for cache reads/patches)
    # =========================================================================

    def _category_filter(self, history: TableClause, status: TableClause, category: Category):
        function_match = func.lower(status.c.funcao_sistema).like(f"%{category.marker}%")
        if category is Category.PROPOSAL:
            return or_(history.c.status == PROPOSAL_STATUS, function_match)
        return function_match

    async def fetch_latest_in_category(
        self,
        tenant: str,
        columns: Columns,
        entity_id: str,
        category: Category,
        ordinal: int = 0,
    ) -> Optional[Dict[str, Any]]:
        """The ordinal-th most recent requisition row in a category, or None."""
        validate_tenant(tenant)
        kind = EntityKind.REQUISITION
        history = _tenant_table(tenant, kind.history_table, columns)
        status = _tenant_table(tenant, kind.status_table, ["status", "funcao_sistema"])

        stmt = (
            select(history)
            .select_from(history.outerjoin(status, status.c.status == history.c.status))
            .where(history.c[kind.id_field] == entity_id)
            .where(self._category_filter(history, status, category))
            .order_by(history.c.created_at.desc(), history.c.id.desc())
            .offset(ordinal)
            .limit(1)
        )

        try:
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except SQLAlchemyError as e:
            raise DurableReadError(tenant, kind.history_table, str(e), cause=e) from e
        return dict(row) if row else None

    async def update_latest_in_category(
        self,
        tenant: str,
        columns: Columns,
        entity_id: str,
        category: Category,
        values: Dict[str, Any],
        ordinal: int = 0,
    ) -> bool:
        """Update the ordinal-th most recent row of a category. False if none matched."""
        validate_tenant(tenant)
        kind = EntityKind.REQUISITION
        history = _tenant_table(tenant, kind.history_table, columns)
        latest = history.alias("h2")
        status = _tenant_table(tenant, kind.status_table, ["status", "funcao_sistema"])

        target_id = (
            select(latest.c.id)
            .select_from(latest.outerjoin(status, status.c.status == latest.c.status))
            .where(latest.c[kind.id_field] == entity_id)
            .where(self._category_filter(latest, status, category))
            .order_by(latest.c.created_at.desc(), latest.c.id.desc())
            .offset(ordinal)
            .limit(1)
            .scalar_subquery()
        )
        assignments = coerce_values(values, columns)
        if "updated_at" in columns:
            assignments["updated_at"] = func.now()
        if not assignments:
            raise ValueError("nothing to update")

        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(history).where(history.c.id == target_id).values(**assignments)
                )
            return result.rowcount > 0
        except SQLAlchemyError as e:
            raise DurableWriteError(tenant, kind.history_table, str(e), cause=e) from e

    async def fetch_status_entries(self, tenant: str, kind: EntityKind) -> List[Dict[str, Any]]:
        """Rows of the tenant's status reference table."""
        columns = await self.get_table_columns(tenant, kind.status_table)
        if not columns:
            return []
        reference = _tenant_table(tenant, kind.status_table, columns)
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(select(reference))).mappings().all()
        except SQLAlchemyError as e:
            raise DurableReadError(tenant, kind.status_table, str(e), cause=e) from e
        return [dict(r) for r in rows]
