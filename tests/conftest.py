"""Shared pytest fixtures for tracker tests.

Unit tests run against InMemoryDocumentStore. Integration tests (marker
`integration`) get a PostgreSQL database via two modes:
1. TEST_DATABASE_* env vars present → connect to external PG (CI scenario)
2. Otherwise → testcontainers auto-starts a temporary PG container (local dev)

Safety: refuses to run against any database whose name doesn't contain '_test'.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from src.config.settings import StoreSettings, SyncSettings
from src.constants import DB_SCHEMA
from src.session.context import SessionContext
from src.store.database import ensure_schema
from src.store.memory import InMemoryDocumentStore
from src.tracker.service import TrackerService

# ---------------------------------------------------------------------------
# In-memory fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store_settings() -> StoreSettings:
    return StoreSettings(app_id="test-app")


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def alice() -> SessionContext:
    return SessionContext("alice")


@pytest.fixture
def bob() -> SessionContext:
    return SessionContext("bob")


@pytest.fixture
def tracker(store, alice, store_settings) -> TrackerService:
    return TrackerService(store, alice, store_settings, SyncSettings())


@pytest.fixture
def wait_until() -> Callable:
    """Await until predicate() holds, letting collection pump tasks run."""

    async def _wait(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.001)

    return _wait


# ---------------------------------------------------------------------------
# PostgreSQL fixtures (integration)
# ---------------------------------------------------------------------------


def _validate_test_db_name(name: str) -> None:
    """Safety: refuse to truncate a database whose name doesn't contain '_test'."""
    if "_test" not in name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{name}': "
            "name must contain '_test' to prevent accidental data loss. "
            "Set TEST_DATABASE_NAME to a test-specific database."
        )


def _build_pg_url_from_env() -> str | None:
    """Build async PG URL from TEST_DATABASE_* env vars, or return None."""
    host = os.getenv("TEST_DATABASE_HOST")
    if host is None:
        return None
    port = os.getenv("TEST_DATABASE_PORT", "5432")
    user = os.getenv("TEST_DATABASE_USER", "postgres")
    password = os.getenv("TEST_DATABASE_PASSWORD", "")
    name = os.getenv("TEST_DATABASE_NAME", "bugtracker_test")
    _validate_test_db_name(name)
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@pytest.fixture(scope="session")
def _pg_container():
    """Manage testcontainers PostgreSQL lifecycle.

    Yields (url, container) where container is None if using external PG.
    """
    url = _build_pg_url_from_env()
    if url is not None:
        yield url, None
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16", dbname="bugtracker_test")
    container.start()

    host = container.get_container_host_ip()
    port = container.get_exposed_port(5432)
    user = container.username
    password = container.password
    dbname = container.dbname
    _validate_test_db_name(dbname)

    url = f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{dbname}"

    yield url, container

    container.stop()


@pytest.fixture(scope="session")
def pg_url(_pg_container) -> str:
    url, _ = _pg_container
    return url


@pytest_asyncio.fixture
async def db_engine(pg_url: str):
    """Engine with schema, documents table and notify trigger.

    Function-scoped so LISTEN connections never outlive the test event loop.
    """
    engine = create_async_engine(
        pg_url,
        echo=False,
        connect_args={"server_settings": {"timezone": "UTC"}},
    )
    await ensure_schema(engine, DB_SCHEMA)

    yield engine

    async with engine.begin() as conn:
        await conn.execute(text(f"TRUNCATE {DB_SCHEMA}.documents"))

    await engine.dispose()


@pytest_asyncio.fixture
async def pg_store(db_engine):
    from src.store.postgres import PostgresDocumentStore

    pg = PostgresDocumentStore(db_engine)
    yield pg
    await pg.aclose()

