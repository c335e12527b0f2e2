"""
Tests for the durable store client and the tenant schema registry.

Uses SQLite with attached databases standing in for tenant schemas.
"""

from datetime import date, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import Date, DateTime, text

from rpo_sync.database.schema import TenantSchemaRegistry
from rpo_sync.database.session import DurableClient, coerce_values, get_database_url
from rpo_sync.errors import DurableReadError, DurableWriteError, TenantValidationError
from rpo_sync.models import Category, EntityKind
from rpo_sync.utils.config import Settings

from conftest import TENANT, fetch_rows


# =============================================================================
# DATABASE URL TESTS
# =============================================================================

class TestDatabaseUrl:
    """Test URL resolution priority and driver rewriting."""

    def test_database_url_wins(self):
        settings = Settings(_env_file=None, DATABASE_URL="postgres://u:p@db/rpo", POSTGRES_URL="postgresql://x/y")
        assert get_database_url(settings) == "postgresql+asyncpg://u:p@db/rpo"

    def test_postgres_url_fallback(self):
        settings = Settings(_env_file=None, DATABASE_URL=None, POSTGRES_URL="postgresql://u:p@db/rpo")
        assert get_database_url(settings) == "postgresql+asyncpg://u:p@db/rpo"

    def test_sqlite_for_local_development(self):
        settings = Settings(_env_file=None, DATABASE_URL=None, POSTGRES_URL=None, SQLITE_PATH="dev.db")
        assert get_database_url(settings) == "sqlite+aiosqlite:///dev.db"


class TestCoerceValues:
    """Test conversion of cached timestamp strings for typed columns."""

    def test_aware_timestamp_becomes_naive_utc(self):
        values = coerce_values({"updated_at": "2024-05-01T09:00:00-03:00", "status": "X"},
                               {"updated_at": DateTime(), "status": None})
        assert values["updated_at"] == datetime(2024, 5, 1, 12, 0, 0)
        assert values["status"] == "X"

    def test_timezone_column_keeps_offset(self):
        values = coerce_values({"updated_at": "2024-05-01T12:00:00Z"}, {"updated_at": DateTime(timezone=True)})
        assert values["updated_at"].tzinfo is not None

    def test_date_and_unparseable_values(self):
        values = coerce_values({"inicio": "2024-05-01T00:00:00", "updated_at": "ontem"},
                               {"inicio": Date(), "updated_at": DateTime()})
        assert values["inicio"] == date(2024, 5, 1)
        assert values["updated_at"] == "ontem"

    def test_untyped_columns_pass_through(self):
        values = {"updated_at": "2024-05-01T12:00:00Z"}
        assert coerce_values(values, ["updated_at"]) == values


# =============================================================================
# DURABLE CLIENT TESTS
# =============================================================================

@pytest.mark.asyncio
class TestDurableClient:
    """Test catalog lookups, inserts and category queries."""

    async def test_health_check(self, durable):
        health = await durable.health_check()
        assert health["connected"] is True

    async def test_engine_requires_open(self, settings):
        client = DurableClient(url="sqlite+aiosqlite:///:memory:", settings=settings)
        with pytest.raises(RuntimeError):
            client.engine

    async def test_table_columns_in_ordinal_order(self, durable):
        columns = await durable.get_table_columns(TENANT, "historico_vagas")
        assert columns == ["id", "requisicao", "status", "recrutador", "observacao", "created_at", "updated_at"]

    async def test_missing_table_has_no_columns(self, durable):
        assert await durable.get_table_columns(TENANT, "status_candidatos") == []

    async def test_columns_validate_tenant(self, durable):
        with pytest.raises(TenantValidationError):
            await durable.get_table_columns('x"; DROP', "historico_vagas")

    async def test_list_schemas_with_table(self, durable):
        assert await durable.list_schemas_with_table("historico_vagas", "RPO_") == [TENANT]
        assert await durable.list_schemas_with_table("historico_vagas", "OTHER_") == []

    async def test_insert_sets_created_at(self, durable):
        await durable.insert_row(TENANT, "historico_vagas", {"requisicao": "REQ-1", "status": "ABERTA"})
        rows = await fetch_rows(durable, "historico_vagas")
        assert len(rows) == 1
        assert rows[0]["requisicao"] == "REQ-1"
        assert rows[0]["created_at"] is not None

    async def test_each_insert_is_a_new_row(self, durable):
        for status in ("ABERTA", "PROPOSTA"):
            await durable.insert_row(TENANT, "historico_vagas", {"requisicao": "REQ-1", "status": status})
        assert len(await fetch_rows(durable, "historico_vagas")) == 2

    async def test_insert_failure_raises_durable_write_error(self, durable):
        with pytest.raises(DurableWriteError) as exc_info:
            await durable.insert_row(TENANT, "historico_vagas", {"no_such_column": 1, "requisicao": "R"})
        assert exc_info.value.tenant == TENANT
        assert exc_info.value.table == "historico_vagas"

    async def test_describe_table_reflects_types(self, durable):
        types = await durable.describe_table(TENANT, "historico_vagas")
        assert isinstance(types["created_at"], DateTime)
        assert await durable.describe_table(TENANT, "status_candidatos") == {}

    async def test_typed_insert_accepts_iso_timestamps(self, durable):
        types = await durable.describe_table(TENANT, "historico_vagas")
        await durable.insert_row(
            TENANT, "historico_vagas",
            {"requisicao": "REQ-1", "status": "ABERTA", "updated_at": "2024-05-01T12:00:00Z"},
            columns=types,
        )
        rows = await fetch_rows(durable, "historico_vagas")
        assert str(rows[0]["updated_at"]).startswith("2024-05-01 12:00:00")

    async def test_fetch_latest_in_category(self, durable):
        columns = await durable.get_table_columns(TENANT, "historico_vagas")
        for status, note in (("PROPOSTA", "first"), ("EM SHORTLIST", "sl"), ("PROPOSTA", "second")):
            await durable.insert_row(TENANT, "historico_vagas", {"requisicao": "REQ-1", "status": status, "observacao": note})

        latest = await durable.fetch_latest_in_category(TENANT, columns, "REQ-1", Category.PROPOSAL)
        previous = await durable.fetch_latest_in_category(TENANT, columns, "REQ-1", Category.PROPOSAL, ordinal=1)
        shortlist = await durable.fetch_latest_in_category(TENANT, columns, "REQ-1", Category.SHORTLIST)

        assert latest["observacao"] == "second"
        assert previous["observacao"] == "first"
        assert shortlist["observacao"] == "sl"
        assert await durable.fetch_latest_in_category(TENANT, columns, "REQ-1", Category.CLOSED) is None

    async def test_fetch_latest_failure_raises_durable_read_error(self, durable):
        columns = await durable.get_table_columns(TENANT, "historico_vagas")
        async with durable.engine.begin() as conn:
            await conn.exec_driver_sql(f'DROP TABLE "{TENANT}".status_vagas')

        with pytest.raises(DurableReadError) as exc_info:
            await durable.fetch_latest_in_category(TENANT, columns, "REQ-1", Category.PROPOSAL)
        assert exc_info.value.table == "historico_vagas"

    async def test_update_latest_in_category(self, durable):
        columns = await durable.get_table_columns(TENANT, "historico_vagas")
        for note in ("first", "second"):
            await durable.insert_row(TENANT, "historico_vagas", {"requisicao": "REQ-1", "status": "PROPOSTA", "observacao": note})

        updated = await durable.update_latest_in_category(
            TENANT, columns, "REQ-1", Category.PROPOSAL, {"recrutador": "joao"}
        )
        assert updated is True

        rows = await fetch_rows(durable, "historico_vagas")
        assert rows[0]["recrutador"] is None
        assert rows[1]["recrutador"] == "joao"
        assert rows[1]["updated_at"] is not None

    async def test_update_latest_without_match(self, durable):
        columns = await durable.get_table_columns(TENANT, "historico_vagas")
        assert await durable.update_latest_in_category(
            TENANT, columns, "REQ-404", Category.PROPOSAL, {"recrutador": "x"}
        ) is False

    async def test_update_row_by_id(self, durable):
        columns = await durable.get_table_columns(TENANT, "historico_vagas")
        await durable.insert_row(TENANT, "historico_vagas", {"requisicao": "REQ-1", "status": "ABERTA"})

        row = await durable.update_row(TENANT, "historico_vagas", columns, 1, {"status": "PROPOSTA"})
        assert row["status"] == "PROPOSTA"
        assert await durable.update_row(TENANT, "historico_vagas", columns, 999, {"status": "X"}) is None

    async def test_fetch_status_entries(self, durable):
        entries = await durable.fetch_status_entries(TENANT, EntityKind.REQUISITION)
        assert {e["status"] for e in entries} >= {"PROPOSTA", "EM SHORTLIST"}
        assert await durable.fetch_status_entries(TENANT, EntityKind.CANDIDATE) == []


# =============================================================================
# SCHEMA REGISTRY TESTS
# =============================================================================

@pytest.mark.asyncio
class TestTenantSchemaRegistry:
    """Test column caching and invalidation."""

    async def test_columns_are_cached(self, durable):
        registry = TenantSchemaRegistry(durable)
        first = await registry.get_columns(TENANT, "historico_vagas")

        durable.describe_table = AsyncMock(return_value={"id": None})
        assert await registry.get_columns(TENANT, "historico_vagas") == first
        durable.describe_table.assert_not_called()

    async def test_invalidate_forces_reload(self, durable):
        registry = TenantSchemaRegistry(durable)
        await registry.get_columns(TENANT, "historico_vagas")

        async with durable.engine.begin() as conn:
            await conn.execute(text(f'ALTER TABLE "{TENANT}".historico_vagas ADD COLUMN salario INTEGER'))

        assert "salario" not in await registry.get_columns(TENANT, "historico_vagas")
        registry.invalidate(TENANT, "historico_vagas")
        assert "salario" in await registry.get_columns(TENANT, "historico_vagas")

    async def test_missing_table_is_not_cached(self, durable):
        registry = TenantSchemaRegistry(durable)
        assert await registry.get_columns(TENANT, "status_candidatos") == ()
        assert registry.get_schema(TENANT) is None

    async def test_catalog_error_raises_and_is_not_cached(self, durable):
        registry = TenantSchemaRegistry(durable)
        describe_table = durable.describe_table
        durable.describe_table = AsyncMock(side_effect=DurableReadError(TENANT, "historico_vagas", "gone"))
        with pytest.raises(DurableReadError):
            await registry.get_columns(TENANT, "historico_vagas")
        assert registry.get_schema(TENANT) is None

        durable.describe_table = describe_table
        assert "requisicao" in await registry.get_columns(TENANT, "historico_vagas")
