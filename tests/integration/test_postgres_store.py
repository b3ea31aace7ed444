"""PostgreSQL document store against a real database.

Covers server timestamps, JSONB filters and the LISTEN/NOTIFY change feed
that drives live queries.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from src.infra.errors import SubscriptionError, WriteError
from src.session.context import SessionContext
from src.store.base import SERVER_TIMESTAMP, ChangeType, Query
from src.tracker.bugs import create_bug, open_bug_collection
from src.tracker.comments import CommentThread
from src.tracker.models import BugStatus
from src.tracker.workflow import StatusWorkflow

pytestmark = pytest.mark.integration

BUGS = "artifacts/it/public/data/bugs"
COMMENTS = "artifacts/it/public/data/comments"


class TestWrites:
    async def test_add_and_get(self, pg_store) -> None:
        doc_id = await pg_store.add(BUGS, {"title": "x", "createdAt": SERVER_TIMESTAMP})
        doc = await pg_store.get(BUGS, doc_id)
        assert doc["title"] == "x"
        assert datetime.fromisoformat(doc["createdAt"]).tzinfo is not None

    async def test_update_merges(self, pg_store) -> None:
        doc_id = await pg_store.add(BUGS, {"title": "x", "status": "Open"})
        await pg_store.update(BUGS, doc_id, {"status": "Resolved"})
        assert await pg_store.get(BUGS, doc_id) == {"title": "x", "status": "Resolved"}

    async def test_update_unknown(self, pg_store) -> None:
        with pytest.raises(WriteError) as exc_info:
            await pg_store.update(BUGS, "missing", {"status": "Open"})
        assert exc_info.value.code == "NOT_FOUND"

    async def test_server_timestamps_increase(self, pg_store) -> None:
        first = await pg_store.add(COMMENTS, {"createdAt": SERVER_TIMESTAMP})
        second = await pg_store.add(COMMENTS, {"createdAt": SERVER_TIMESTAMP})
        a = datetime.fromisoformat((await pg_store.get(COMMENTS, first))["createdAt"])
        b = datetime.fromisoformat((await pg_store.get(COMMENTS, second))["createdAt"])
        assert b > a


class TestLiveQueries:
    async def test_initial_snapshot_filtered_and_ordered(self, pg_store) -> None:
        await pg_store.add(COMMENTS, {"bugId": "b1", "n": "2"})
        await pg_store.add(COMMENTS, {"bugId": "b2", "n": "9"})
        await pg_store.add(COMMENTS, {"bugId": "b1", "n": "1"})
        sub = await pg_store.subscribe(Query(COMMENTS).where("bugId", "b1").order("n"))
        try:
            snapshot = await sub.__anext__()
            assert snapshot.full
            assert [c.data["n"] for c in snapshot.changes] == ["1", "2"]
        finally:
            await sub.close()

    async def test_change_feed_delivers_deltas(self, pg_store) -> None:
        sub = await pg_store.subscribe(Query(BUGS))
        try:
            await sub.__anext__()
            doc_id = await pg_store.add(BUGS, {"status": "Open"})
            added = (await sub.__anext__()).changes[0]
            await pg_store.update(BUGS, doc_id, {"status": "Resolved"})
            modified = (await sub.__anext__()).changes[0]
            await pg_store.delete(BUGS, doc_id)
            removed = (await sub.__anext__()).changes[0]

            assert added.type == ChangeType.added
            assert modified.type == ChangeType.modified
            assert modified.data["status"] == "Resolved"
            assert removed.type == ChangeType.removed
            assert {added.doc_id, modified.doc_id, removed.doc_id} == {doc_id}
        finally:
            await sub.close()

    async def test_listener_survives_release_during_subscribe(self, pg_store) -> None:
        first = await pg_store.subscribe(Query(BUGS))
        await first.__anext__()

        # Second subscribe is mid-read when the only other subscription closes
        pending = asyncio.create_task(pg_store.subscribe(Query(BUGS)))
        await asyncio.sleep(0)
        await first.close()
        second = await pending
        try:
            await second.__anext__()
            doc_id = await pg_store.add(BUGS, {"status": "Open"})
            change = (await asyncio.wait_for(second.__anext__(), timeout=5.0)).changes[0]
            assert change.type == ChangeType.added
            assert change.doc_id == doc_id
        finally:
            await second.close()

    async def test_aclose_fails_open_subscriptions(self, pg_store) -> None:
        sub = await pg_store.subscribe(Query(BUGS))
        await sub.__anext__()
        await pg_store.aclose()
        with pytest.raises(SubscriptionError):
            await sub.__anext__()


class TestTrackerOnPostgres:
    async def test_board_and_thread(self, pg_store, wait_until) -> None:
        alice = SessionContext("alice")
        bugs = await open_bug_collection(pg_store, BUGS)
        try:
            bug_id = await create_bug(
                pg_store, alice, BUGS, {"title": "Crash on save", "description": "d"}
            )
            await wait_until(lambda: bug_id in bugs, timeout=5.0)

            await StatusWorkflow(pg_store, alice, BUGS).set_status(bug_id, "In Progress")
            await wait_until(
                lambda: bugs.get(bug_id).status is BugStatus.in_progress, timeout=5.0
            )

            async with CommentThread(pg_store, alice, bug_id, collection_path=COMMENTS) as t:
                await t.post("repro steps attached")
                await wait_until(lambda: len(t) == 1, timeout=5.0)
                assert t.items[0].created_at > bugs.get(bug_id).created_at
        finally:
            await bugs.close()
