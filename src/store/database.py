"""Async database engine, schema bootstrap and change-feed trigger for PostgreSQL."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from src.constants import DB_SCHEMA, DEFAULT_NOTIFY_CHANNEL
from src.store.models import Base

if TYPE_CHECKING:
    from src.config.settings import DatabaseSettings

logger = structlog.get_logger()


def build_database_url(settings: DatabaseSettings) -> str:
    return (
        f"postgresql+asyncpg://{settings.user}:{settings.password}"
        f"@{settings.host}:{settings.port}/{settings.name}"
    )


async def create_db_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async SQLAlchemy engine from DatabaseSettings."""
    engine = create_async_engine(
        build_database_url(settings),
        pool_size=5,
        max_overflow=10,
        # UTC keeps server timestamps in a single offset, so their JSON text sorts correctly
        connect_args={
            "server_settings": {
                "search_path": f"{settings.schema_}, public",
                "timezone": "UTC",
            }
        },
    )
    logger.info("db_engine_created", host=settings.host, database=settings.name)
    return engine


async def ensure_schema(
    engine: AsyncEngine,
    schema: str = DB_SCHEMA,
    *,
    channel: str = DEFAULT_NOTIFY_CHANNEL,
) -> None:
    """Ensure the target schema exists, then create tables and the change-feed trigger."""
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
        await conn.run_sync(Base.metadata.create_all)

        # Three separate execute() calls to avoid asyncpg multi-statement issues.
        await conn.execute(text(f"""
            CREATE OR REPLACE FUNCTION {schema}.documents_notify()
            RETURNS trigger AS $$
            DECLARE
                rec RECORD;
            BEGIN
                IF TG_OP = 'DELETE' THEN
                    rec := OLD;
                ELSE
                    rec := NEW;
                END IF;
                PERFORM pg_notify(
                    '{channel}',
                    json_build_object(
                        'collection', rec.collection,
                        'id', rec.id,
                        'op', lower(TG_OP)
                    )::text
                );
                RETURN rec;
            END;
            $$ LANGUAGE plpgsql
        """))

        await conn.execute(text(
            f"DROP TRIGGER IF EXISTS trg_documents_notify ON {schema}.documents"
        ))

        await conn.execute(text(f"""
            CREATE TRIGGER trg_documents_notify
            AFTER INSERT OR UPDATE OR DELETE ON {schema}.documents
            FOR EACH ROW
            EXECUTE FUNCTION {schema}.documents_notify()
        """))

    logger.info("db_schema_ensured", schema=schema, channel=channel)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to the engine."""
    return async_sessionmaker(engine, expire_on_commit=False)
