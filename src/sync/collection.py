"""Live, ordered client-side replica of one remote query.

SyncedCollection subscribes to a DocumentStore query and reconciles every
snapshot (the initial full one and each delta) into a replica keyed by
document identity. After each reconciliation the replica is re-sorted with
the caller's sort key, so order never depends on arrival order, and the full
ordered replica is pushed to every observer.

All mutation happens in reconciliation on the event loop; everything else
only reads.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

import structlog

from src.infra.errors import MalformedDocumentError, SubscriptionError, TrackerError
from src.store.base import ChangeType, Document, DocumentStore, Query, Snapshot, Subscription

logger = structlog.get_logger()

T = TypeVar("T")

SortKey = Callable[[T], Any]
Parser = Callable[[str, Document], T]
ChangeObserver = Callable[[tuple[T, ...]], None]
ErrorObserver = Callable[[TrackerError], None]

_END = object()


class ChangeStream(Generic[T]):
    """Push-based async iterator over a collection's change events.

    Each item is the full ordered replica. Ends when the collection closes;
    raises SubscriptionError if the channel is dropped.
    """

    def __init__(self, owner: SyncedCollection[T]) -> None:
        self._owner = owner
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def _put(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def _end(self, marker: Any) -> None:
        if marker is _END:
            # Nothing queued before close() may be yielded after it
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(marker)

    def __aiter__(self) -> ChangeStream[T]:
        return self

    async def __anext__(self) -> tuple[T, ...]:
        item = await self._queue.get()
        if item is _END:
            self.close()
            raise StopAsyncIteration
        if isinstance(item, SubscriptionError):
            self.close()
            raise item
        return item

    def close(self) -> None:
        self._owner._streams.discard(self)


class SyncedCollection(Generic[T]):
    """Ordered replica of the documents matching a live query.

    `parse` turns (doc_id, data) into an entity and raises
    MalformedDocumentError (or ValueError) for documents it cannot accept.
    """

    def __init__(
        self,
        store: DocumentStore,
        parse: Parser[T],
        *,
        name: str = "collection",
        error_history_limit: int = 50,
    ) -> None:
        self._store = store
        self._parse = parse
        self.name = name
        self._query: Query | None = None
        self._sort_key: SortKey | None = None
        self._subscription: Subscription | None = None
        self._pump: asyncio.Task[None] | None = None
        self._entities: dict[str, T] = {}
        self._ordered: tuple[T, ...] = ()
        self._version = 0
        self._observers: list[ChangeObserver] = []
        self._error_observers: list[ErrorObserver] = []
        self._streams: set[ChangeStream[T]] = set()
        self.errors: deque[TrackerError] = deque(maxlen=error_history_limit)

    # -- read side -----------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    @property
    def query(self) -> Query | None:
        return self._query

    @property
    def items(self) -> tuple[T, ...]:
        """Current ordered replica."""
        return self._ordered

    @property
    def version(self) -> int:
        """Number of reconciliations applied since the last open()."""
        return self._version

    def get(self, doc_id: str) -> T | None:
        return self._entities.get(doc_id)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._entities

    def __len__(self) -> int:
        return len(self._ordered)

    def __iter__(self) -> Iterator[T]:
        return iter(self._ordered)

    # -- observers -----------------------------------------------------------

    def observe(self, callback: ChangeObserver) -> Callable[[], None]:
        """Register a change observer. Returns a function that unregisters it."""
        self._observers.append(callback)

        def _unobserve() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unobserve

    def on_error(self, callback: ErrorObserver) -> Callable[[], None]:
        """Register an error-channel observer. Returns a function that unregisters it."""
        self._error_observers.append(callback)

        def _unobserve() -> None:
            if callback in self._error_observers:
                self._error_observers.remove(callback)

        return _unobserve

    def changes(self, *, include_current: bool = True) -> ChangeStream[T]:
        """Stream of change events. Starts with the current replica if one was received."""
        if not self.is_open:
            raise SubscriptionError(f"{self.name} is not open", code="NOT_OPEN")
        stream: ChangeStream[T] = ChangeStream(self)
        if include_current and self._version > 0:
            stream._put(self._ordered)
        self._streams.add(stream)
        return stream

    # -- lifecycle -----------------------------------------------------------

    async def open(self, query: Query, sort_key: SortKey) -> None:
        """Begin the live subscription.

        Raises SubscriptionError if the store cannot establish the channel.
        Not retried here; the caller decides whether to open again.
        """
        if self.is_open:
            raise SubscriptionError(f"{self.name} is already open", code="ALREADY_OPEN")
        subscription = await self._store.subscribe(query)
        self._query = query
        self._sort_key = sort_key
        self._entities = {}
        self._ordered = ()
        self._version = 0
        self._subscription = subscription
        self._pump = asyncio.create_task(self._run(subscription), name=f"sync:{self.name}")
        logger.info("collection_opened", collection=self.name, source=query.collection)

    async def close(self) -> None:
        """Release the subscription. No notification is delivered after this returns."""
        subscription, pump = self._subscription, self._pump
        if subscription is None:
            return
        self._subscription = None
        self._pump = None
        self._end_streams(_END)
        await subscription.close()
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        logger.info("collection_closed", collection=self.name, size=len(self._ordered))

    async def __aenter__(self) -> SyncedCollection[T]:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _run(self, subscription: Subscription) -> None:
        try:
            async for snapshot in subscription:
                if self._subscription is not subscription:
                    return
                self._reconcile(snapshot)
        except SubscriptionError as e:
            if self._subscription is not subscription:
                return
            logger.warning("collection_channel_dropped", collection=self.name, error=str(e))
            self._subscription = None
            self._pump = None
            self._report(e)
            self._end_streams(e)
            await subscription.close()

    # -- reconciliation ------------------------------------------------------

    def _reconcile(self, snapshot: Snapshot) -> None:
        entities = {} if snapshot.full else dict(self._entities)
        for change in snapshot.changes:
            if change.type == ChangeType.removed:
                entities.pop(change.doc_id, None)
                continue
            try:
                entity = self._parse(change.doc_id, change.data or {})
            except MalformedDocumentError as e:
                entities.pop(change.doc_id, None)
                self._report(e)
                continue
            except ValueError as e:
                entities.pop(change.doc_id, None)
                self._report(MalformedDocumentError(change.doc_id, str(e)))
                continue
            entities[change.doc_id] = entity

        self._entities = entities
        self._ordered = tuple(sorted(entities.values(), key=self._sort_key))
        self._version += 1
        logger.debug(
            "collection_reconciled",
            collection=self.name,
            changes=len(snapshot.changes),
            full=snapshot.full,
            size=len(self._ordered),
        )
        self._emit()

    def _emit(self) -> None:
        items = self._ordered
        for callback in list(self._observers):
            try:
                callback(items)
            except Exception:
                logger.exception("collection_observer_failed", collection=self.name)
        for stream in list(self._streams):
            stream._put(items)

    def _report(self, error: TrackerError) -> None:
        self.errors.append(error)
        if isinstance(error, MalformedDocumentError):
            logger.warning(
                "collection_document_dropped",
                collection=self.name,
                doc_id=error.doc_id,
                reason=error.reason,
            )
        for callback in list(self._error_observers):
            try:
                callback(error)
            except Exception:
                logger.exception("collection_error_observer_failed", collection=self.name)

    def _end_streams(self, marker: Any) -> None:
        streams, self._streams = self._streams, set()
        for stream in streams:
            stream._end(marker)
