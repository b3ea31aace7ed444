"""Single-process document store with live query fan-out.

Every committed write is routed to each open subscription on the same
collection, in commit order. Used by the local gateway and by tests, which can
inject write rejections, subscribe failures and dropped channels.
"""

from __future__ import annotations

import copy
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from src.infra.errors import SubscriptionError, WriteError
from src.store.base import (
    Document,
    DocumentStore,
    Query,
    Snapshot,
    Subscription,
    WriteRecord,
    split_server_timestamps,
)

logger = structlog.get_logger()


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in a dict, with a monotonic server clock."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._collections: dict[str, dict[str, Document]] = defaultdict(dict)
        self._subscriptions: list[Subscription] = []
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last_timestamp: datetime | None = None
        self._write_error: WriteError | None = None
        self._subscribe_error: SubscriptionError | None = None
        self.writes: list[WriteRecord] = []

    # -- failure injection ---------------------------------------------------

    def reject_writes(self, error: WriteError | None) -> None:
        """Make every following write raise `error` (None restores normal behavior)."""
        self._write_error = error

    def reject_subscriptions(self, error: SubscriptionError | None) -> None:
        self._subscribe_error = error

    def drop_subscriptions(self, reason: str = "channel dropped") -> int:
        """Fail every open subscription as if the channel went away."""
        dropped = list(self._subscriptions)
        self._subscriptions.clear()
        for sub in dropped:
            sub.fail(SubscriptionError(reason, code="CHANNEL_DROPPED"))
        logger.warning("store_subscriptions_dropped", count=len(dropped), reason=reason)
        return len(dropped)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # -- server clock --------------------------------------------------------

    def server_now(self) -> datetime:
        """Strictly increasing commit timestamp."""
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _stamp(self, data: Document) -> Document:
        literal, stamped = split_server_timestamps(data)
        resolved = copy.deepcopy(literal)
        if stamped:
            now = self.server_now()
            for name in stamped:
                resolved[name] = now
        return resolved

    # -- writes --------------------------------------------------------------

    async def add(self, collection: str, data: Document) -> str:
        if self._write_error is not None:
            raise self._write_error
        if not isinstance(data, dict):
            raise WriteError(
                f"Document must be a mapping (got {type(data).__name__})",
                code="INVALID_DOCUMENT",
            )
        doc_id = uuid.uuid4().hex
        document = self._stamp(data)
        self._collections[collection][doc_id] = document
        self.writes.append(WriteRecord("add", collection, doc_id, copy.deepcopy(document)))
        logger.debug("store_document_added", collection=collection, doc_id=doc_id)
        self._fan_out(collection, doc_id, document)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        if self._write_error is not None:
            raise self._write_error
        current = self._collections[collection].get(doc_id)
        if current is None:
            raise WriteError(
                f"No document '{doc_id}' in '{collection}'", code="NOT_FOUND"
            )
        changes = self._stamp(fields)
        document = {**current, **changes}
        self._collections[collection][doc_id] = document
        self.writes.append(WriteRecord("update", collection, doc_id, copy.deepcopy(changes)))
        logger.debug(
            "store_document_updated",
            collection=collection,
            doc_id=doc_id,
            fields=sorted(changes),
        )
        self._fan_out(collection, doc_id, document)

    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document. Not used by the tracker; lets tests exercise removals."""
        if self._write_error is not None:
            raise self._write_error
        if self._collections[collection].pop(doc_id, None) is None:
            raise WriteError(
                f"No document '{doc_id}' in '{collection}'", code="NOT_FOUND"
            )
        self.writes.append(WriteRecord("delete", collection, doc_id))
        self._fan_out(collection, doc_id, None)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        document = self._collections[collection].get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    # -- live queries --------------------------------------------------------

    async def subscribe(self, query: Query) -> Subscription:
        if self._subscribe_error is not None:
            raise self._subscribe_error
        subscription = Subscription(query, on_close=self._release)
        docs = self._collections[query.collection]
        subscription.start(
            (doc_id, copy.deepcopy(data)) for doc_id, data in docs.items() if query.matches(data)
        )
        self._subscriptions.append(subscription)
        logger.debug(
            "store_subscription_opened",
            collection=query.collection,
            initial=len(subscription.known_ids),
        )
        return subscription

    async def _release(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _fan_out(self, collection: str, doc_id: str, document: Document | None) -> None:
        for sub in list(self._subscriptions):
            if sub.query.collection != collection:
                continue
            change = sub.route(doc_id, copy.deepcopy(document) if document is not None else None)
            if change is not None:
                sub.push(Snapshot(changes=(change,)))

    async def aclose(self) -> None:
        self.drop_subscriptions("store closed")
