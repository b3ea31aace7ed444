"""Tests for InMemoryDocumentStore: writes, server clock, live query fan-out, failures."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.infra.errors import SubscriptionError, WriteError
from src.store.base import SERVER_TIMESTAMP, ChangeType, Query
from src.store.memory import InMemoryDocumentStore


class TestWrites:
    async def test_add_assigns_id_and_stamps_server_time(
        self, store: InMemoryDocumentStore
    ) -> None:
        doc_id = await store.add("bugs", {"title": "x", "createdAt": SERVER_TIMESTAMP})
        doc = await store.get("bugs", doc_id)
        assert doc is not None
        assert doc["title"] == "x"
        assert isinstance(doc["createdAt"], datetime)
        assert doc["createdAt"].tzinfo is not None

    async def test_server_clock_strictly_increases(self) -> None:
        frozen = datetime(2026, 1, 1, tzinfo=UTC)
        store = InMemoryDocumentStore(clock=lambda: frozen)
        a = await store.add("c", {"createdAt": SERVER_TIMESTAMP})
        b = await store.add("c", {"createdAt": SERVER_TIMESTAMP})
        ta = (await store.get("c", a))["createdAt"]
        tb = (await store.get("c", b))["createdAt"]
        assert ta == frozen
        assert tb > ta

    async def test_update_merges_fields(self, store: InMemoryDocumentStore) -> None:
        doc_id = await store.add("bugs", {"title": "x", "status": "Open"})
        await store.update("bugs", doc_id, {"status": "Resolved"})
        assert await store.get("bugs", doc_id) == {"title": "x", "status": "Resolved"}

    async def test_update_unknown_document(self, store: InMemoryDocumentStore) -> None:
        with pytest.raises(WriteError) as exc_info:
            await store.update("bugs", "missing", {"status": "Open"})
        assert exc_info.value.code == "NOT_FOUND"

    async def test_get_returns_copy(self, store: InMemoryDocumentStore) -> None:
        doc_id = await store.add("bugs", {"title": "x"})
        doc = await store.get("bugs", doc_id)
        doc["title"] = "mutated"
        assert (await store.get("bugs", doc_id))["title"] == "x"

    async def test_rejected_writes_raise_and_change_nothing(
        self, store: InMemoryDocumentStore
    ) -> None:
        store.reject_writes(WriteError("permission denied", code="PERMISSION_DENIED"))
        with pytest.raises(WriteError, match="permission denied"):
            await store.add("bugs", {"title": "x"})
        assert store.writes == []

    async def test_write_log_records_operations(self, store: InMemoryDocumentStore) -> None:
        doc_id = await store.add("bugs", {"title": "x"})
        await store.update("bugs", doc_id, {"status": "Open"})
        assert [(w.op, w.doc_id) for w in store.writes] == [("add", doc_id), ("update", doc_id)]


class TestLiveQueries:
    async def test_initial_snapshot_is_full_and_filtered(
        self, store: InMemoryDocumentStore
    ) -> None:
        await store.add("comments", {"bugId": "b1", "n": 1})
        await store.add("comments", {"bugId": "b2", "n": 2})
        sub = await store.subscribe(Query("comments").where("bugId", "b1"))
        snapshot = await sub.__anext__()
        assert snapshot.full
        assert [c.data["n"] for c in snapshot.changes] == [1]

    async def test_deltas_follow_commits(self, store: InMemoryDocumentStore) -> None:
        sub = await store.subscribe(Query("bugs"))
        await sub.__anext__()  # initial

        doc_id = await store.add("bugs", {"status": "Open"})
        await store.update("bugs", doc_id, {"status": "Resolved"})
        await store.delete("bugs", doc_id)

        kinds = [(await sub.__anext__()).changes[0].type for _ in range(3)]
        assert kinds == [ChangeType.added, ChangeType.modified, ChangeType.removed]

    async def test_update_leaving_filter_is_a_removal(self, store: InMemoryDocumentStore) -> None:
        doc_id = await store.add("bugs", {"status": "Open"})
        sub = await store.subscribe(Query("bugs").where("status", "Open"))
        await sub.__anext__()
        await store.update("bugs", doc_id, {"status": "Resolved"})
        change = (await sub.__anext__()).changes[0]
        assert change.type == ChangeType.removed
        assert change.doc_id == doc_id

    async def test_other_collections_not_delivered(self, store: InMemoryDocumentStore) -> None:
        sub = await store.subscribe(Query("bugs"))
        await sub.__anext__()
        await store.add("comments", {"bugId": "b1"})
        await store.add("bugs", {"title": "x"})
        snapshot = await sub.__anext__()
        assert snapshot.changes[0].data == {"title": "x"}

    async def test_closed_subscription_is_released(self, store: InMemoryDocumentStore) -> None:
        sub = await store.subscribe(Query("bugs"))
        assert store.subscription_count == 1
        await sub.close()
        assert store.subscription_count == 0

    async def test_rejected_subscription(self, store: InMemoryDocumentStore) -> None:
        store.reject_subscriptions(SubscriptionError("auth failed", code="UNAUTHENTICATED"))
        with pytest.raises(SubscriptionError, match="auth failed"):
            await store.subscribe(Query("bugs"))

    async def test_drop_subscriptions_fails_iteration(self, store: InMemoryDocumentStore) -> None:
        sub = await store.subscribe(Query("bugs"))
        await sub.__anext__()
        assert store.drop_subscriptions() == 1
        with pytest.raises(SubscriptionError) as exc_info:
            await sub.__anext__()
        assert exc_info.value.code == "CHANNEL_DROPPED"
