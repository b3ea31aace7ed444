"""Per-bug comment threads: append-only, in a stable order on every client."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog

from src.constants import COMMENTS_COLLECTION
from src.infra.errors import ValidationError
from src.session.context import SessionContext
from src.store.base import SERVER_TIMESTAMP, DocumentStore, Query
from src.sync.collection import ChangeObserver, ChangeStream, ErrorObserver, SyncedCollection
from src.tracker.models import Comment

logger = structlog.get_logger()


def comment_sort_key(comment: Comment) -> tuple[datetime, str]:
    """Oldest first; comments sharing a timestamp are ordered by identity."""
    return (comment.created_at, comment.id)


def comments_query(
    collection_path: str, bug_id: str, *, server_side_ordering: bool = True
) -> Query:
    """Comments of one bug.

    The replica is always sorted client-side, so dropping the order-by (for a
    store that cannot combine it with the filter) does not change the result.
    """
    query = Query(collection_path).where("bugId", bug_id)
    if server_side_ordering:
        query = query.order("createdAt")
    return query


async def post_comment(
    store: DocumentStore,
    session: SessionContext,
    collection_path: str,
    bug_id: str,
    content: str,
) -> str:
    """Append a comment to a bug. Returns the store-assigned id.

    Empty or whitespace-only content raises ValidationError and nothing is
    written. createdAt comes from the store clock, never the local one.
    """
    if not content or not content.strip():
        raise ValidationError("Comment content must not be empty", code="EMPTY_CONTENT")
    if not bug_id:
        raise ValidationError("bug_id must not be empty", code="INVALID_BUG_ID")
    author_id = session.require_user()
    doc_id = await store.add(
        collection_path,
        {
            "bugId": bug_id,
            "content": content,
            "authorId": author_id,
            "createdAt": SERVER_TIMESTAMP,
        },
    )
    logger.info("comment_posted", comment_id=doc_id, bug_id=bug_id, author_id=author_id)
    return doc_id


class CommentThread:
    """Synchronized comments of a single bug, ordered (createdAt, id) ascending."""

    def __init__(
        self,
        store: DocumentStore,
        session: SessionContext,
        bug_id: str,
        *,
        collection_path: str,
        server_side_ordering: bool = True,
        error_history_limit: int = 50,
    ) -> None:
        if not bug_id:
            raise ValidationError("bug_id must not be empty", code="INVALID_BUG_ID")
        self.bug_id = bug_id
        self._store = store
        self._session = session
        self._collection_path = collection_path
        self._server_side_ordering = server_side_ordering
        self.collection: SyncedCollection[Comment] = SyncedCollection(
            store,
            Comment.from_document,
            name=f"{COMMENTS_COLLECTION}:{bug_id}",
            error_history_limit=error_history_limit,
        )

    @property
    def items(self) -> tuple[Comment, ...]:
        return self.collection.items

    @property
    def is_open(self) -> bool:
        return self.collection.is_open

    def __len__(self) -> int:
        return len(self.collection)

    async def open(self) -> None:
        query = comments_query(
            self._collection_path,
            self.bug_id,
            server_side_ordering=self._server_side_ordering,
        )
        await self.collection.open(query, comment_sort_key)

    async def close(self) -> None:
        await self.collection.close()

    async def __aenter__(self) -> CommentThread:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def observe(self, callback: ChangeObserver) -> Callable[[], None]:
        return self.collection.observe(callback)

    def on_error(self, callback: ErrorObserver) -> Callable[[], None]:
        return self.collection.on_error(callback)

    def changes(self, *, include_current: bool = True) -> ChangeStream[Comment]:
        return self.collection.changes(include_current=include_current)

    async def post(self, content: str) -> str:
        return await post_comment(
            self._store, self._session, self._collection_path, self.bug_id, content
        )
