"""Document store contract: live queries, snapshots and identity-keyed writes.

A store holds named collections of JSON-like documents keyed by a
store-assigned identity. Clients write with add/update and observe a query
with subscribe(), which yields a full snapshot first and then deltas.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from src.infra.errors import SubscriptionError

Document = dict[str, Any]


class _ServerTimestamp:
    """Sentinel: replaced by the store's server clock at commit time."""

    _instance: _ServerTimestamp | None = None

    def __new__(cls) -> _ServerTimestamp:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def split_server_timestamps(data: Document) -> tuple[Document, list[str]]:
    """Separate literal fields from fields the store must stamp with its clock."""
    literal = {k: v for k, v in data.items() if v is not SERVER_TIMESTAMP}
    stamped = [k for k, v in data.items() if v is SERVER_TIMESTAMP]
    return literal, stamped


class ChangeType(StrEnum):
    added = "added"
    modified = "modified"
    removed = "removed"


@dataclass(frozen=True)
class FieldFilter:
    field: str
    value: Any
    op: str = "=="

    def __post_init__(self) -> None:
        if self.op not in ("==", "!="):
            raise ValueError(f"Unsupported filter operator: {self.op!r}")

    def matches(self, data: Document) -> bool:
        equal = self.field in data and data[self.field] == self.value
        return equal if self.op == "==" else not equal


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    """A live query: one collection, equality filters, optional ordering."""

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    order_by: tuple[OrderBy, ...] = ()

    def where(self, field_name: str, value: Any, op: str = "==") -> Query:
        return Query(
            self.collection,
            (*self.filters, FieldFilter(field_name, value, op)),
            self.order_by,
        )

    def order(self, field_name: str, *, descending: bool = False) -> Query:
        return Query(
            self.collection,
            self.filters,
            (*self.order_by, OrderBy(field_name, descending)),
        )

    def matches(self, data: Document) -> bool:
        return all(f.matches(data) for f in self.filters)

    def sort(self, docs: Iterable[tuple[str, Document]]) -> list[tuple[str, Document]]:
        """Order (doc_id, data) pairs by order_by, then by identity.

        Missing fields sort first. Multi-pass stable sort, least significant key first.
        """
        result = sorted(docs, key=lambda item: item[0])
        for order in reversed(self.order_by):
            result.sort(
                key=lambda item, f=order.field: (
                    item[1].get(f) is not None,
                    item[1].get(f) if item[1].get(f) is not None else 0,
                ),
                reverse=order.descending,
            )
        return result


@dataclass(frozen=True)
class DocumentChange:
    type: ChangeType
    doc_id: str
    data: Document | None = None


@dataclass(frozen=True)
class Snapshot:
    """One notification for a live query.

    full=True means `changes` lists every matching document (as added) and
    anything not listed is gone. Otherwise the snapshot is a delta.
    """

    changes: tuple[DocumentChange, ...] = ()
    full: bool = False


_END = object()


class Subscription:
    """Live query handle: async iterator of Snapshot plus a cancellation handle.

    Stores push snapshots with push() and report a dropped channel with fail().
    After close() returns, iteration stops and nothing further is yielded.
    """

    def __init__(
        self,
        query: Query,
        *,
        on_close: Callable[[Subscription], Awaitable[None]] | None = None,
    ) -> None:
        self.query = query
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._released = False
        self._on_close = on_close
        # Identities currently in this query's result set, as seen by the store
        self.known_ids: set[str] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: Snapshot) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def fail(self, error: SubscriptionError) -> None:
        if not self._closed:
            self._queue.put_nowait(error)

    def route(self, doc_id: str, data: Document | None) -> DocumentChange | None:
        """Translate a committed document state into this query's change, if any.

        data=None means the document no longer exists.
        """
        was_member = doc_id in self.known_ids
        is_member = data is not None and self.query.matches(data)
        if is_member:
            self.known_ids.add(doc_id)
            kind = ChangeType.modified if was_member else ChangeType.added
            return DocumentChange(kind, doc_id, data)
        if was_member:
            self.known_ids.discard(doc_id)
            return DocumentChange(ChangeType.removed, doc_id)
        return None

    def start(self, docs: Iterable[tuple[str, Document]]) -> None:
        """Deliver the initial full snapshot."""
        ordered = self.query.sort(docs)
        self.known_ids = {doc_id for doc_id, _ in ordered}
        self.push(
            Snapshot(
                changes=tuple(
                    DocumentChange(ChangeType.added, doc_id, data) for doc_id, data in ordered
                ),
                full=True,
            )
        )

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Snapshot:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if self._closed or item is _END:
            raise StopAsyncIteration
        if isinstance(item, SubscriptionError):
            self._closed = True
            raise item
        return item

    async def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        self._closed = True
        self._queue.put_nowait(_END)
        if self._on_close is not None:
            await self._on_close(self)


class DocumentStore(ABC):
    """Remote document collection service."""

    @abstractmethod
    async def add(self, collection: str, data: Document) -> str:
        """Create a document and return its store-assigned identity.

        Raises WriteError if the store rejects the write.
        """
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        """Merge `fields` into an existing document (last write wins).

        Raises WriteError(code="NOT_FOUND") for an unknown identity.
        """
        ...

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None:
        ...

    @abstractmethod
    async def subscribe(self, query: Query) -> Subscription:
        """Open a live query. Raises SubscriptionError if the channel cannot be established."""
        ...

    async def aclose(self) -> None:
        """Release store resources. Open subscriptions are failed."""
        return None


@dataclass
class WriteRecord:
    """Entry in a store's write log."""

    op: str
    collection: str
    doc_id: str
    fields: Document = field(default_factory=dict)
