"""PostgreSQL-backed document store.

Documents live in one JSONB table. Server timestamps come from
clock_timestamp() inside the write statement. Live queries are fed by a
row trigger that publishes {collection, id, op} with pg_notify; one dedicated
LISTEN connection receives those and a single pump task re-reads the changed
row and routes it to every subscription on that collection, in arrival order.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

import structlog
from sqlalchemy import String, delete, func, insert, literal, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.constants import DEFAULT_NOTIFY_CHANNEL
from src.infra.errors import SubscriptionError, WriteError
from src.store.base import (
    Document,
    DocumentStore,
    Query,
    Snapshot,
    Subscription,
    split_server_timestamps,
)
from src.store.database import make_session_factory
from src.store.models import DocumentRecord

logger = structlog.get_logger()

_DB_ERRORS = (SQLAlchemyError, OSError)


def _document_value(data: Document) -> Any:
    """JSONB expression for `data`, with SERVER_TIMESTAMP fields stamped in SQL."""
    literal_fields, stamped = split_server_timestamps(data)
    value = literal(literal_fields, type_=JSONB)
    if stamped:
        args: list[Any] = []
        for name in stamped:
            args.extend([literal(name, type_=String), func.clock_timestamp()])
        value = value.op("||", return_type=JSONB)(func.jsonb_build_object(*args))
    return value


def _select_for(query: Query):
    stmt = select(DocumentRecord.id, DocumentRecord.data).where(
        DocumentRecord.collection == query.collection
    )
    for f in query.filters:
        condition = DocumentRecord.data.contains({f.field: f.value})
        stmt = stmt.where(condition if f.op == "==" else ~condition)
    for order in query.order_by:
        column = DocumentRecord.data[order.field].astext
        stmt = stmt.order_by(column.desc() if order.descending else column.asc())
    return stmt.order_by(DocumentRecord.id)


class PostgresDocumentStore(DocumentStore):
    """DocumentStore over SQLAlchemy async + asyncpg LISTEN/NOTIFY."""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        channel: str = DEFAULT_NOTIFY_CHANNEL,
        owns_engine: bool = False,
    ) -> None:
        self._engine = engine
        self._owns_engine = owns_engine
        self._db = make_session_factory(engine)
        self._channel = channel
        self._subscriptions: list[Subscription] = []
        self._lock = asyncio.Lock()
        self._listener: AsyncConnection | None = None
        self._driver_conn: Any = None
        self._notifications: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._pump: asyncio.Task[None] | None = None

    # -- writes --------------------------------------------------------------

    async def add(self, collection: str, data: Document) -> str:
        doc_id = uuid.uuid4().hex
        stmt = insert(DocumentRecord).values(
            collection=collection, id=doc_id, data=_document_value(data)
        )
        try:
            async with self._db() as db_session:
                await db_session.execute(stmt)
                await db_session.commit()
        except _DB_ERRORS as e:
            logger.warning("store_add_failed", collection=collection, error=str(e))
            raise WriteError(f"Store rejected write to '{collection}': {e}") from e
        logger.debug("store_document_added", collection=collection, doc_id=doc_id)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        stmt = (
            update(DocumentRecord)
            .where(DocumentRecord.collection == collection, DocumentRecord.id == doc_id)
            .values(
                data=DocumentRecord.data.op("||", return_type=JSONB)(_document_value(fields)),
                updated_at=func.now(),
            )
            .returning(DocumentRecord.id)
        )
        try:
            async with self._db() as db_session:
                result = await db_session.execute(stmt)
                updated = result.scalar_one_or_none()
                await db_session.commit()
        except _DB_ERRORS as e:
            logger.warning(
                "store_update_failed", collection=collection, doc_id=doc_id, error=str(e)
            )
            raise WriteError(f"Store rejected update of '{doc_id}': {e}") from e
        if updated is None:
            raise WriteError(f"No document '{doc_id}' in '{collection}'", code="NOT_FOUND")

    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document. Not used by the tracker; lets tests exercise removals."""
        stmt = (
            delete(DocumentRecord)
            .where(DocumentRecord.collection == collection, DocumentRecord.id == doc_id)
            .returning(DocumentRecord.id)
        )
        try:
            async with self._db() as db_session:
                result = await db_session.execute(stmt)
                deleted = result.scalar_one_or_none()
                await db_session.commit()
        except _DB_ERRORS as e:
            raise WriteError(f"Store rejected delete of '{doc_id}': {e}") from e
        if deleted is None:
            raise WriteError(f"No document '{doc_id}' in '{collection}'", code="NOT_FOUND")

    async def get(self, collection: str, doc_id: str) -> Document | None:
        stmt = select(DocumentRecord.data).where(
            DocumentRecord.collection == collection, DocumentRecord.id == doc_id
        )
        async with self._db() as db_session:
            result = await db_session.execute(stmt)
            return result.scalar_one_or_none()

    # -- live queries --------------------------------------------------------

    async def subscribe(self, query: Query) -> Subscription:
        try:
            # Held across the initial read so no notification is routed between
            # the read and the registration of the subscription.
            async with self._lock:
                await self._ensure_listener()
                async with self._db() as db_session:
                    result = await db_session.execute(_select_for(query))
                    rows = [(row.id, row.data) for row in result]
                subscription = Subscription(query, on_close=self._release)
                subscription.start(rows)
                self._subscriptions.append(subscription)
        except _DB_ERRORS as e:
            logger.warning(
                "store_subscribe_failed", collection=query.collection, error=str(e)
            )
            raise SubscriptionError(
                f"Could not open live query on '{query.collection}': {e}"
            ) from e
        logger.debug(
            "store_subscription_opened", collection=query.collection, initial=len(rows)
        )
        return subscription

    async def _release(self, subscription: Subscription) -> None:
        # Under the lock so a subscribe in progress keeps the listener it found
        async with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            if not self._subscriptions:
                await self._stop_listener()

    async def _ensure_listener(self) -> None:
        if self._listener is not None:
            return
        conn = await self._engine.connect()
        try:
            raw = await conn.get_raw_connection()
            driver_conn = raw.driver_connection
            await driver_conn.add_listener(self._channel, self._on_notify)
            driver_conn.add_termination_listener(self._on_terminated)
        except BaseException:
            await conn.close()
            raise
        self._listener = conn
        self._driver_conn = driver_conn
        self._pump = asyncio.create_task(self._run_pump(), name="pg-notify-pump")
        logger.info("store_listener_started", channel=self._channel)

    async def _stop_listener(self) -> None:
        listener, driver_conn, pump = self._listener, self._driver_conn, self._pump
        self._listener = self._driver_conn = self._pump = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        if listener is None:
            return
        try:
            if not driver_conn.is_closed():
                driver_conn.remove_termination_listener(self._on_terminated)
                await driver_conn.remove_listener(self._channel, self._on_notify)
            await listener.close()
        except _DB_ERRORS:
            logger.exception("store_listener_close_failed", channel=self._channel)
        logger.info("store_listener_stopped", channel=self._channel)

    def _on_notify(self, _conn: Any, _pid: int, _channel: str, payload: str) -> None:
        try:
            note = json.loads(payload)
        except json.JSONDecodeError:
            note = None
        if not isinstance(note, dict) or "collection" not in note or "id" not in note:
            logger.warning("store_notification_malformed", payload=payload)
            return
        self._notifications.put_nowait(note)

    def _on_terminated(self, _conn: Any) -> None:
        logger.warning("store_listener_terminated", channel=self._channel)
        self._fail_all(SubscriptionError("Change feed connection lost", code="CHANNEL_DROPPED"))
        self._listener = self._driver_conn = None
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None

    def _fail_all(self, error: SubscriptionError) -> None:
        dropped, self._subscriptions = self._subscriptions, []
        for sub in dropped:
            sub.fail(error)

    async def _run_pump(self) -> None:
        while True:
            note = await self._notifications.get()
            async with self._lock:
                try:
                    await self._dispatch(note)
                except _DB_ERRORS:
                    logger.exception("store_dispatch_failed", collection=note["collection"])
                    self._fail_all(
                        SubscriptionError("Change feed read failed", code="CHANNEL_DROPPED")
                    )

    async def _dispatch(self, note: dict[str, Any]) -> None:
        collection, doc_id = note["collection"], note["id"]
        targets = [s for s in self._subscriptions if s.query.collection == collection]
        if not targets:
            return
        data = None if note.get("op") == "delete" else await self.get(collection, doc_id)
        for sub in targets:
            change = sub.route(doc_id, data)
            if change is not None:
                sub.push(Snapshot(changes=(change,)))

    async def aclose(self) -> None:
        async with self._lock:
            self._fail_all(SubscriptionError("Store closed", code="CHANNEL_DROPPED"))
            await self._stop_listener()
        if self._owns_engine:
            await self._engine.dispose()
            logger.info("db_engine_disposed")
