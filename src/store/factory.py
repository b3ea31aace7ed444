"""Build the configured DocumentStore."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from src.store.base import DocumentStore
from src.store.database import create_db_engine, ensure_schema
from src.store.memory import InMemoryDocumentStore
from src.store.postgres import PostgresDocumentStore

if TYPE_CHECKING:
    from src.config.settings import Settings

logger = structlog.get_logger()


async def open_store(settings: Settings) -> DocumentStore:
    """Create the store selected by STORE_BACKEND.

    Postgres startup fails if the database or schema is unavailable.
    """
    if settings.store.backend == "memory":
        logger.info("store_opened", backend="memory", app_id=settings.store.app_id)
        return InMemoryDocumentStore()

    engine = await create_db_engine(settings.database)
    await ensure_schema(engine, settings.database.schema_, channel=settings.sync.notify_channel)
    logger.info("store_opened", backend="postgres", app_id=settings.store.app_id)
    return PostgresDocumentStore(engine, channel=settings.sync.notify_channel, owns_engine=True)
