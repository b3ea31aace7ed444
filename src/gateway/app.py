from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from src.config.settings import Settings, get_settings
from src.gateway.connection import ClientConnection
from src.gateway.protocol import (
    BugSetStatusParams,
    CommentPostParams,
    CommentsSubscribeParams,
    RPCError,
    RPCErrorData,
    SubscriptionCloseParams,
    parse_rpc_request,
)
from src.infra.errors import GatewayError, TrackerError
from src.infra.logging import setup_logging
from src.session.context import SessionContext
from src.store.base import DocumentStore
from src.store.factory import open_store
from src.tracker.service import TrackerService

logger = structlog.get_logger()

ParamsT = TypeVar("ParamsT", bound=BaseModel)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize shared state on startup."""
    settings = get_settings()
    setup_logging(json_output=settings.logging.json_output, log_level=settings.logging.level)

    # Postgres backend: startup fails if DB/schema unavailable.
    store = await open_store(settings)

    app.state.settings = settings
    app.state.store = store
    logger.info(
        "gateway_started",
        host=settings.gateway.host,
        port=settings.gateway.port,
        backend=settings.store.backend,
        app_id=settings.store.app_id,
    )

    yield

    # Cleanup
    await store.aclose()
    logger.info("store_closed")


app = FastAPI(title="Bug Tracker Gateway", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    await websocket.accept()
    settings: Settings = websocket.app.state.settings
    store: DocumentStore = websocket.app.state.store

    # Sign-in is external; a missing user_id gets an anonymous identity.
    user_id = websocket.query_params.get("user_id") or f"anon-{uuid.uuid4().hex[:12]}"
    tracker = TrackerService(store, SessionContext(user_id), settings.store, settings.sync)
    connection = ClientConnection(
        tracker, max_subscriptions=settings.gateway.max_subscriptions_per_connection
    )
    sender = asyncio.create_task(_drain_outbox(websocket, connection))
    logger.info("ws_connected", user_id=user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_rpc_message(connection, raw)
    except WebSocketDisconnect:
        logger.info("ws_disconnected", user_id=user_id)
    finally:
        await connection.close_all()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass


async def _drain_outbox(websocket: WebSocket, connection: ClientConnection) -> None:
    """Single writer: frames are sent in the order they were queued."""
    while True:
        frame = await connection.outbox.get()
        try:
            await websocket.send_text(frame)
        except (WebSocketDisconnect, RuntimeError):
            logger.info("ws_send_after_close", user_id=connection.user_id)
            return


async def _handle_rpc_message(connection: ClientConnection, raw: str) -> None:
    """Parse an RPC request and route it to the client's connection state."""
    request_id = "unknown"
    try:
        request = parse_rpc_request(raw)
        request_id = request.id
        params = request.params

        if request.method == "bugs.subscribe":
            subscription_id = await connection.subscribe_board(request_id)
            connection.respond(request_id, {"subscription_id": subscription_id})
        elif request.method == "bugs.create":
            bug_id = await connection.create_bug(params)
            connection.respond(request_id, {"bug_id": bug_id})
        elif request.method == "bugs.set_status":
            parsed = _parse(BugSetStatusParams, params)
            await connection.set_status(parsed.bug_id, parsed.status)
            connection.respond(request_id, {"bug_id": parsed.bug_id})
        elif request.method == "comments.subscribe":
            parsed = _parse(CommentsSubscribeParams, params)
            subscription_id = await connection.subscribe_comments(request_id, parsed.bug_id)
            connection.respond(request_id, {"subscription_id": subscription_id})
        elif request.method == "comments.post":
            parsed = _parse(CommentPostParams, params)
            comment_id = await connection.post_comment(parsed.bug_id, parsed.content)
            connection.respond(request_id, {"comment_id": comment_id})
        elif request.method == "subscriptions.close":
            parsed = _parse(SubscriptionCloseParams, params)
            await connection.close_subscription(parsed.subscription_id)
            connection.respond(request_id, {"subscription_id": parsed.subscription_id})
        else:
            error = RPCError(
                id=request_id,
                error=RPCErrorData(
                    code="METHOD_NOT_FOUND",
                    message=f"Unknown method: {request.method}",
                ),
            )
            connection.send(error)

    except TrackerError as e:
        logger.warning("request_error", code=e.code, error=str(e), request_id=request_id)
        connection.send_error(request_id, e)
    except Exception:
        logger.exception("unhandled_error", request_id=request_id)
        error = RPCError(
            id=request_id,
            error=RPCErrorData(code="INTERNAL_ERROR", message="An internal error occurred"),
        )
        connection.send(error)


def _parse(model: type[ParamsT], params: dict[str, Any]) -> ParamsT:
    try:
        return model.model_validate(params)
    except ValidationError as e:
        raise GatewayError(str(e), code="INVALID_PARAMS") from e
