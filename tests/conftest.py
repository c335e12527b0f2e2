"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules:
- an in-process Valkey (fakeredis) behind a real CacheClient
- a SQLite durable store with one attached database per tenant schema
"""

import json
from typing import Any, Dict

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from sqlalchemy import text

from rpo_sync.cache.client import CacheClient
from rpo_sync.cache.config import CacheConfig
from rpo_sync.cache.store import CacheStore
from rpo_sync.database.schema import TenantSchemaRegistry
from rpo_sync.database.session import DurableClient
from rpo_sync.fallback import FallbackWriter
from rpo_sync.history import HistoryService
from rpo_sync.models import EntityKind
from rpo_sync.utils.config import Settings
from rpo_sync.worker.discovery import TenantDiscovery
from rpo_sync.worker.reconciler import ReconciliationWorker


TENANT = "RPO_T1"


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        POSTGRES_URL=None,
        SQLITE_PATH=str(tmp_path / "main.db"),
        SCHEMAS_FILE=str(tmp_path / "schemas.json"),
        TENANT_SCHEMA_PREFIX="RPO_",
        SYNC_MAX_ATTEMPTS=None,
    )


# ============================================================================
# Cache Fixtures
# ============================================================================

@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        redis_url="redis://localhost:6379/15",
        prefix="TEST",
        enabled=True,
        circuit_breaker_enabled=True,
        circuit_breaker_threshold=5,
        circuit_breaker_timeout=60,
    )


@pytest.fixture
async def fake_redis():
    redis = FakeRedis(server=FakeServer(), decode_responses=True)
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest.fixture
def cache_client(cache_config, fake_redis) -> CacheClient:
    return CacheClient(config=cache_config, redis=fake_redis)


@pytest.fixture
def store(cache_client) -> CacheStore:
    return CacheStore(cache_client)


# ============================================================================
# Durable Store Fixtures
# ============================================================================

HISTORY_DDL = (
    f"""CREATE TABLE "{TENANT}".historico_vagas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        requisicao TEXT NOT NULL,
        status TEXT,
        recrutador TEXT,
        observacao TEXT,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )""",
    f"""CREATE TABLE "{TENANT}".historico_candidatos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        id_candidato TEXT NOT NULL,
        requisicao TEXT,
        status_candidato TEXT,
        nome TEXT,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )""",
    f"""CREATE TABLE "{TENANT}".status_vagas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        status TEXT NOT NULL,
        funcao_sistema TEXT
    )""",
)

STATUS_ROWS = (
    ("PROPOSTA", "Proposta"),
    ("EM SHORTLIST", "Shortlist"),
    ("CANCELADA PELO CLIENTE", "Cancelada"),
    ("VAGA FECHADA", "Fechada"),
    ("ABERTA", "Aberta"),
)


@pytest.fixture
async def durable(tmp_path, settings):
    """SQLite durable store; RPO_T1.db is attached as schema RPO_T1."""
    (tmp_path / f"{TENANT}.db").touch()
    client = DurableClient(url=f"sqlite+aiosqlite:///{tmp_path / 'main.db'}", settings=settings)
    await client.open()

    async with client.engine.begin() as conn:
        for ddl in HISTORY_DDL:
            await conn.execute(text(ddl))
        for status, function in STATUS_ROWS:
            await conn.execute(
                text(f'INSERT INTO "{TENANT}".status_vagas (status, funcao_sistema) VALUES (:s, :f)'),
                {"s": status, "f": function},
            )

    yield client
    await client.close()


async def fetch_rows(durable: DurableClient, table: str, where: str = "1=1", **params):
    """All rows of a tenant table, oldest first."""
    async with durable.engine.connect() as conn:
        result = await conn.execute(
            text(f'SELECT * FROM "{TENANT}".{table} WHERE {where} ORDER BY id'), params
        )
        return [dict(r) for r in result.mappings().all()]


@pytest.fixture
def schemas(durable) -> TenantSchemaRegistry:
    return TenantSchemaRegistry(durable)


@pytest.fixture
def fallback(durable, store, schemas) -> FallbackWriter:
    return FallbackWriter(durable, store, schemas)


@pytest.fixture
def service(store, fallback) -> HistoryService:
    return HistoryService(store, fallback)


# ============================================================================
# Worker Fixtures
# ============================================================================

@pytest.fixture
def schemas_file(settings):
    path = settings.SCHEMAS_FILE
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"schemas": [{"name": TENANT, "active": True}]}, f)
    return path


@pytest.fixture
async def discovery(durable, schemas_file, settings) -> TenantDiscovery:
    discovery = TenantDiscovery(durable, settings=settings)
    await discovery.refresh()
    return discovery


@pytest.fixture
def worker(store, durable, discovery, schemas, settings) -> ReconciliationWorker:
    return ReconciliationWorker(store, durable, discovery, schemas=schemas, settings=settings)


# ============================================================================
# Mock Data Fixtures
# ============================================================================

@pytest.fixture
def requisition_fields() -> Dict[str, Any]:
    return {
        "requisicao": "REQ-1001",
        "status": "ABERTA",
        "recrutador": "ana.souza",
    }


@pytest.fixture
def candidate_fields() -> Dict[str, Any]:
    return {
        "id_candidato": "CAND-77",
        "requisicao": "REQ-1001",
        "status_candidato": "ENTREVISTA",
        "nome": "Maria Silva",
    }


@pytest.fixture
async def status_map(store):
    """Requisition status map loaded into the cache."""
    await store.load_status_map(
        TENANT,
        EntityKind.REQUISITION,
        [{"status": s, "funcao_sistema": f} for s, f in STATUS_ROWS],
    )
