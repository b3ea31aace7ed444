"""Tracker facade: one user's view of the shared bug and comment collections.

Binds a DocumentStore and a SessionContext to the configured collection
namespace, and hands out the synchronized views and write operations.
"""

from __future__ import annotations

from typing import Any

from src.config.settings import StoreSettings, SyncSettings
from src.constants import BUGS_COLLECTION, COMMENTS_COLLECTION
from src.session.context import SessionContext
from src.store.base import DocumentStore
from src.sync.collection import SyncedCollection
from src.tracker.board import BugBoard
from src.tracker.bugs import create_bug, open_bug_collection
from src.tracker.comments import CommentThread, post_comment
from src.tracker.models import Bug, BugStatus, NewBug
from src.tracker.workflow import StatusWorkflow


class TrackerService:
    def __init__(
        self,
        store: DocumentStore,
        session: SessionContext,
        store_settings: StoreSettings,
        sync_settings: SyncSettings | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self._sync = sync_settings or SyncSettings()
        self.bugs_path = store_settings.collection_path(BUGS_COLLECTION)
        self.comments_path = store_settings.collection_path(COMMENTS_COLLECTION)
        self.workflow = StatusWorkflow(store, session, self.bugs_path)

    async def open_bugs(self) -> SyncedCollection[Bug]:
        return await open_bug_collection(
            self.store, self.bugs_path, error_history_limit=self._sync.error_history_limit
        )

    async def open_board(self) -> tuple[SyncedCollection[Bug], BugBoard]:
        """Open the bug replica and a board that follows it."""
        bugs = await self.open_bugs()
        return bugs, BugBoard(bugs)

    def thread(self, bug_id: str) -> CommentThread:
        """Comment thread for one bug (not yet opened)."""
        return CommentThread(
            self.store,
            self.session,
            bug_id,
            collection_path=self.comments_path,
            server_side_ordering=self._sync.server_side_ordering,
            error_history_limit=self._sync.error_history_limit,
        )

    async def create_bug(self, new_bug: NewBug | dict[str, Any]) -> str:
        return await create_bug(self.store, self.session, self.bugs_path, new_bug)

    async def set_status(self, bug_id: str, new_status: BugStatus | str) -> None:
        await self.workflow.set_status(bug_id, new_status)

    async def post_comment(self, bug_id: str, content: str) -> str:
        return await post_comment(self.store, self.session, self.comments_path, bug_id, content)
