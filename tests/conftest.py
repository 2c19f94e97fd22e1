"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of clockwork.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402

from clockwork.database.models import Base  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def enable_sqlite_transactions(engine: Engine, begin: str = "BEGIN") -> Engine:
    """Let SQLAlchemy own BEGIN so SAVEPOINT and rollback behave as on PostgreSQL.

    pysqlite otherwise defers BEGIN until the first DML statement, which
    breaks ``session.begin_nested()`` as the first statement of a unit.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin)

    return engine


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Clockwork tables and tiers.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    from clockwork.services.seed import seed_tiers

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_transactions(engine)
    Base.metadata.create_all(engine)
    seed_tiers(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine for tests that need real concurrent connections.

    ``BEGIN IMMEDIATE`` takes the write lock up front so competing
    transactions queue on the busy timeout instead of failing.
    """
    from clockwork.services.seed import seed_tiers

    engine = create_engine(
        f"sqlite:///{tmp_path / 'clockwork.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_transactions(engine, begin="BEGIN IMMEDIATE")
    Base.metadata.create_all(engine)
    seed_tiers(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def cache(db_engine):
    """A CatalogCache over the shared in-memory engine (empty until loaded)."""
    from clockwork.engine.cache import CatalogCache

    c = CatalogCache(db_engine)
    c.load_all()
    return c


def make_series(engine: Engine, **overrides):
    """Create a series through the catalog service (actor 1)."""
    from clockwork.engine.events import RequirementType
    from clockwork.services.catalog_service import create_series

    params = {
        "name": "Chatterbox",
        "requirement_type": RequirementType.CHAT_MESSAGE,
        "base_requirement_value": 10,
        "base_reward_value": 50,
        "max_tier": 6,
    }
    params.update(overrides)
    return create_series(engine, actor_id=1, **params)


def make_standalone(engine: Engine, **overrides):
    """Create a standalone achievement through the catalog service (actor 1)."""
    from clockwork.engine.events import RequirementType
    from clockwork.services.catalog_service import create_standalone_achievement

    params = {
        "name": "Conversation Starter",
        "requirement_type": RequirementType.CHAT_MESSAGE,
        "requirement_value": 1,
        "reward_value": 5,
        "reward_type": "xp",
    }
    params.update(overrides)
    return create_standalone_achievement(engine, actor_id=1, **params)


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_token(sub="99999", is_admin=True)


def make_token(sub: str = "1000", **claims) -> str:
    """Create a JWT signed with the test secret.  Usable as a factory."""
    import jwt

    from clockwork.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": sub, **claims}, JWT_SECRET, algorithm=JWT_ALGORITHM)


@pytest.fixture
def client(db_engine, tmp_path):
    """FastAPI TestClient wired to the in-memory engine and a fresh cache."""
    from fastapi.testclient import TestClient

    from clockwork.api import deps
    from clockwork.api.main import app
    from clockwork.config import ClockworkConfig
    from clockwork.engine.cache import CatalogCache

    catalog = CatalogCache(db_engine)
    catalog.load_all()

    app.dependency_overrides[deps.get_engine] = lambda: db_engine
    app.dependency_overrides[deps.get_cache] = lambda: catalog
    app.dependency_overrides[deps.get_config] = lambda: ClockworkConfig(
        community_name="Test Guild", dashboard_port=8000,
    )
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
