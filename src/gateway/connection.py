"""Per-client state for the WebSocket gateway.

A ClientConnection owns one user's TrackerService, the live subscriptions the
client opened, and an outbound frame queue drained by a single sender task,
so frames leave in the order they were produced.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel

from src.gateway.protocol import RPCError, RPCErrorData, RPCResponse, RPCSnapshot, SnapshotData
from src.infra.errors import GatewayError, SubscriptionError, TrackerError
from src.tracker.board import BugGroups
from src.tracker.models import Comment, NewBug
from src.tracker.service import TrackerService

logger = structlog.get_logger()


class ClientConnection:
    def __init__(self, tracker: TrackerService, *, max_subscriptions: int = 32) -> None:
        self.tracker = tracker
        self.outbox: asyncio.Queue[str] = asyncio.Queue()
        self._max_subscriptions = max_subscriptions
        self._subscriptions: dict[str, Callable[[], Awaitable[None]]] = {}

    @property
    def user_id(self) -> str | None:
        return self.tracker.session.current_user_id()

    @property
    def subscription_ids(self) -> list[str]:
        return list(self._subscriptions)

    def send(self, frame: BaseModel) -> None:
        self.outbox.put_nowait(frame.model_dump_json())

    def respond(self, request_id: str, data: dict | None = None) -> None:
        self.send(RPCResponse(id=request_id, data=data or {}))

    def send_error(self, request_id: str, error: TrackerError) -> None:
        self.send(
            RPCError(id=request_id, error=RPCErrorData(code=error.code, message=str(error)))
        )

    def _check_capacity(self) -> None:
        if len(self._subscriptions) >= self._max_subscriptions:
            raise GatewayError(
                f"Subscription limit reached ({self._max_subscriptions})",
                code="TOO_MANY_SUBSCRIPTIONS",
            )

    def _on_collection_error(self, request_id: str, subscription_id: str):
        def _handle(error: TrackerError) -> None:
            if isinstance(error, SubscriptionError):
                # Channel dropped: the collection is already closed; the client may resubscribe
                self._subscriptions.pop(subscription_id, None)
            self.send_error(request_id, error)

        return _handle

    # -- subscriptions -------------------------------------------------------

    async def subscribe_board(self, request_id: str) -> str:
        """Open the bug board and push it after every change."""
        self._check_capacity()
        bugs, board = await self.tracker.open_board()
        subscription_id = uuid.uuid4().hex

        def _push(groups: BugGroups) -> None:
            self.send(
                RPCSnapshot(
                    id=request_id,
                    data=SnapshotData(
                        subscription_id=subscription_id,
                        kind="board",
                        version=bugs.version,
                        payload=board.to_wire(),
                    ),
                )
            )

        board.observe(_push)
        bugs.on_error(self._on_collection_error(request_id, subscription_id))

        async def _close() -> None:
            board.detach()
            await bugs.close()

        self._subscriptions[subscription_id] = _close
        logger.info("board_subscribed", subscription_id=subscription_id, user_id=self.user_id)
        return subscription_id

    async def subscribe_comments(self, request_id: str, bug_id: str) -> str:
        """Open one bug's comment thread and push it after every change."""
        self._check_capacity()
        thread = self.tracker.thread(bug_id)
        await thread.open()
        subscription_id = uuid.uuid4().hex

        def _push(comments: tuple[Comment, ...]) -> None:
            self.send(
                RPCSnapshot(
                    id=request_id,
                    data=SnapshotData(
                        subscription_id=subscription_id,
                        kind="comments",
                        version=thread.collection.version,
                        payload={
                            "bug_id": bug_id,
                            "comments": [c.to_wire() for c in comments],
                        },
                    ),
                )
            )

        thread.observe(_push)
        thread.on_error(self._on_collection_error(request_id, subscription_id))
        self._subscriptions[subscription_id] = thread.close
        logger.info(
            "comments_subscribed",
            subscription_id=subscription_id,
            bug_id=bug_id,
            user_id=self.user_id,
        )
        return subscription_id

    async def close_subscription(self, subscription_id: str) -> None:
        closer = self._subscriptions.pop(subscription_id, None)
        if closer is None:
            raise GatewayError(
                f"Unknown subscription: {subscription_id}", code="SUBSCRIPTION_NOT_FOUND"
            )
        await closer()

    async def close_all(self) -> None:
        """Close every subscription (best-effort; one failure does not stop the rest)."""
        closers, self._subscriptions = self._subscriptions, {}
        for subscription_id, closer in closers.items():
            try:
                await closer()
            except Exception:
                logger.exception("subscription_close_failed", subscription_id=subscription_id)

    # -- writes --------------------------------------------------------------

    async def create_bug(self, new_bug: NewBug | dict[str, Any]) -> str:
        return await self.tracker.create_bug(new_bug)

    async def set_status(self, bug_id: str, status: str) -> None:
        await self.tracker.set_status(bug_id, status)

    async def post_comment(self, bug_id: str, content: str) -> str:
        return await self.tracker.post_comment(bug_id, content)
