"""Bug status workflow.

Open, In Progress and Resolved are fully connected: any status may move to
any other and none is terminal. New bugs start Open. Status changes are plain
last-write-wins field updates; the displayed status is advisory until the
next synchronization notification confirms it.
"""

from __future__ import annotations

import structlog

from src.infra.errors import ValidationError
from src.session.context import SessionContext
from src.store.base import DocumentStore
from src.tracker.models import BugStatus

logger = structlog.get_logger()

INITIAL_STATUS = BugStatus.open


def coerce_status(value: BugStatus | str) -> BugStatus:
    """Accept a BugStatus, its value ("In Progress") or its name ("in_progress")."""
    if isinstance(value, BugStatus):
        return value
    try:
        return BugStatus(value)
    except ValueError:
        pass
    try:
        return BugStatus[str(value)]
    except KeyError:
        allowed = [s.value for s in BugStatus]
        raise ValidationError(
            f"Unknown status {value!r}; expected one of {allowed}", code="INVALID_STATUS"
        ) from None


def allowed_transitions(current: BugStatus | str) -> frozenset[BugStatus]:
    """Every status other than the current one."""
    current = coerce_status(current)
    return frozenset(s for s in BugStatus if s is not current)


def can_transition(current: BugStatus | str, target: BugStatus | str) -> bool:
    return coerce_status(target) in allowed_transitions(current)


class StatusWorkflow:
    """Issues status updates for bugs in one collection."""

    def __init__(
        self, store: DocumentStore, session: SessionContext, collection_path: str
    ) -> None:
        self._store = store
        self._session = session
        self._collection = collection_path

    async def set_status(self, bug_id: str, new_status: BugStatus | str) -> None:
        """Write `status` on one bug. No compare-and-swap: the last committed write wins.

        Raises ValidationError (bad status, no bug id, not signed in) before
        touching the store; WriteError if the store rejects the update.
        Not retried.
        """
        status = coerce_status(new_status)
        if not bug_id:
            raise ValidationError("bug_id must not be empty", code="INVALID_BUG_ID")
        user_id = self._session.require_user()
        await self._store.update(self._collection, bug_id, {"status": status.value})
        logger.info("bug_status_set", bug_id=bug_id, status=status.value, user_id=user_id)
