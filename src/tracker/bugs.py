"""Bug reports: creation and the synchronized bug collection."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from src.constants import BUGS_COLLECTION
from src.infra.errors import ValidationError
from src.session.context import SessionContext
from src.store.base import SERVER_TIMESTAMP, DocumentStore, Query
from src.sync.collection import SyncedCollection
from src.tracker.models import Bug, BugStatus, NewBug

logger = structlog.get_logger()


def bug_sort_key(bug: Bug) -> tuple[float, str]:
    """Newest first; equal timestamps ordered by identity so every client agrees."""
    return (-bug.created_at.timestamp(), bug.id)


def bugs_query(collection_path: str) -> Query:
    return Query(collection_path).order("createdAt", descending=True)


def make_bug_collection(
    store: DocumentStore, *, error_history_limit: int = 50
) -> SyncedCollection[Bug]:
    return SyncedCollection(
        store,
        Bug.from_document,
        name=BUGS_COLLECTION,
        error_history_limit=error_history_limit,
    )


async def open_bug_collection(
    store: DocumentStore, collection_path: str, *, error_history_limit: int = 50
) -> SyncedCollection[Bug]:
    """Open a live replica of every bug, newest first."""
    bugs = make_bug_collection(store, error_history_limit=error_history_limit)
    await bugs.open(bugs_query(collection_path), bug_sort_key)
    return bugs


def _coerce_new_bug(new_bug: NewBug | dict[str, Any]) -> NewBug:
    if isinstance(new_bug, NewBug):
        return new_bug
    try:
        return NewBug.model_validate(new_bug)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid bug report: {e}", code="INVALID_BUG") from e


async def create_bug(
    store: DocumentStore,
    session: SessionContext,
    collection_path: str,
    new_bug: NewBug | dict[str, Any],
) -> str:
    """Write a new bug report in status Open. Returns the store-assigned id.

    Raises ValidationError before any store call if the input is invalid or
    nobody is signed in; WriteError if the store rejects the write.
    """
    report = _coerce_new_bug(new_bug)
    reporter_id = session.require_user()
    doc_id = await store.add(
        collection_path,
        {
            "title": report.title,
            "description": report.description,
            "status": BugStatus.open.value,
            "priority": report.priority.value,
            "reporterId": reporter_id,
            "createdAt": SERVER_TIMESTAMP,
            "imageUrl": report.image_url,
        },
    )
    logger.info(
        "bug_created", bug_id=doc_id, priority=report.priority.value, reporter_id=reporter_id
    )
    return doc_id
