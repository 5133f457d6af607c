"""
Shared fixtures: an in-memory SQLite database (aiosqlite) with SAVEPOINT
support, a service-level session, and an HTTP client bound to the same engine.
"""

import os

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["API_KEY"] = ""

import uuid
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from adaudit.database import Base, get_db
import adaudit.models  # noqa: F401
from adaudit.services.decision_service import DecisionService


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _install_sqlite_hooks(engine, begin_statement: str = "BEGIN"):
    # pysqlite's implicit transaction handling breaks SAVEPOINT; take over BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_conn, _connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql(begin_statement)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _install_sqlite_hooks(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def file_engine(tmp_path):
    """File-backed engine whose connections are independent, for tests that race two sessions.

    BEGIN IMMEDIATE takes the write lock up front so concurrent writers queue on
    the busy timeout instead of failing with "database is locked" mid-transaction.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _install_sqlite_hooks(engine, "BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(engine):
    from adaudit.main import app

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def account_id():
    return uuid.uuid4()


@pytest.fixture
def make_decision(db, account_id):
    """Create a draft decision through the service with sensible defaults."""
    service = DecisionService(db, actor="tester")

    async def _make(**overrides):
        fields = {
            "account_id": account_id,
            "module_id": 4,
            "entity_type": "keyword",
            "entity_id": f"kw-{uuid.uuid4().hex[:8]}",
            "entity_name": "running shoes",
            "action_type": "update_bid",
            "before_value": {"cpc_bid_micros": 1_000_000},
            "after_value": {"cpc_bid_micros": 1_500_000, "match_type": "EXACT"},
            "rationale": "CPA below target",
            "evidence": {"campaign_name": "Brand", "ad_group_name": "Shoes"},
        }
        fields.update(overrides)
        return await service.create(**fields)

    return _make
