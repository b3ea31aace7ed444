"""Tests for ensure_schema change-feed trigger DDL.

Covers: bootstrap is idempotent, and a row write publishes a
{collection, id, op} notification on the channel.

Marked as integration: requires a live PostgreSQL instance.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from src.constants import DB_SCHEMA, DEFAULT_NOTIFY_CHANNEL
from src.store.database import ensure_schema


@pytest.mark.integration
@pytest.mark.asyncio
async def test_ensure_schema_creates_notify_trigger(db_engine: AsyncEngine) -> None:
    """Trigger is idempotent and INSERT publishes a notification."""
    await ensure_schema(db_engine, DB_SCHEMA)
    await ensure_schema(db_engine, DB_SCHEMA)

    received: asyncio.Queue[str] = asyncio.Queue()
    async with db_engine.connect() as listener:
        raw = await listener.get_raw_connection()
        driver_conn = raw.driver_connection
        await driver_conn.add_listener(
            DEFAULT_NOTIFY_CHANNEL, lambda *args: received.put_nowait(args[-1])
        )

        async with db_engine.begin() as conn:
            await conn.execute(text(f"""
                INSERT INTO {DB_SCHEMA}.documents (collection, id, data)
                VALUES ('bugs', 'trigger-test', '{{"title": "t"}}'::jsonb)
            """))

        payload = json.loads(await asyncio.wait_for(received.get(), timeout=5.0))
        assert payload == {"collection": "bugs", "id": "trigger-test", "op": "insert"}
