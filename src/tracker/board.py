"""Status board: bugs grouped by status, derived from the bug replica."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from types import MappingProxyType

import structlog

from src.sync.collection import SyncedCollection
from src.tracker.bugs import bug_sort_key
from src.tracker.models import Bug, BugStatus

logger = structlog.get_logger()

BugGroups = Mapping[BugStatus, tuple[Bug, ...]]
BoardObserver = Callable[[BugGroups], None]


def group_by_status(bugs: Iterable[Bug]) -> BugGroups:
    """Pure projection: every status maps to its bugs, newest first, ties by id."""
    groups: dict[BugStatus, list[Bug]] = {status: [] for status in BugStatus}
    for bug in sorted(bugs, key=bug_sort_key):
        groups[bug.status].append(bug)
    return MappingProxyType({status: tuple(items) for status, items in groups.items()})


class BugBoard:
    """Grouping of the synchronized bugs by status, recomputed on every change.

    The only state kept is the last input and its result.
    """

    def __init__(self, bugs: SyncedCollection[Bug] | None = None) -> None:
        self._last_input: tuple[Bug, ...] | None = None
        self._groups: BugGroups = group_by_status(())
        self._observers: list[BoardObserver] = []
        self._detach: Callable[[], None] | None = None
        if bugs is not None:
            self.attach(bugs)

    def attach(self, bugs: SyncedCollection[Bug]) -> None:
        """Follow a bug collection; recompute on each of its change events."""
        self.detach()
        self._detach = bugs.observe(self.update)
        if bugs.version > 0:
            self.update(bugs.items)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def update(self, bugs: Sequence[Bug]) -> BugGroups:
        snapshot = tuple(bugs)
        if snapshot is not self._last_input and snapshot != self._last_input:
            self._last_input = snapshot
            self._groups = group_by_status(snapshot)
            logger.debug("board_recomputed", **{s.name: len(g) for s, g in self._groups.items()})
        for callback in list(self._observers):
            try:
                callback(self._groups)
            except Exception:
                logger.exception("board_observer_failed")
        return self._groups

    def observe(self, callback: BoardObserver) -> Callable[[], None]:
        self._observers.append(callback)

        def _unobserve() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unobserve

    @property
    def groups(self) -> BugGroups:
        return self._groups

    def column(self, status: BugStatus | str) -> tuple[Bug, ...]:
        return self._groups[BugStatus(status)]

    def counts(self) -> dict[BugStatus, int]:
        return {status: len(items) for status, items in self._groups.items()}

    def find(self, bug_id: str) -> Bug | None:
        for items in self._groups.values():
            for bug in items:
                if bug.id == bug_id:
                    return bug
        return None

    def to_wire(self) -> dict[str, list[dict]]:
        return {
            status.value: [bug.to_wire() for bug in items]
            for status, items in self._groups.items()
        }
