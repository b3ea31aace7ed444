from __future__ import annotations

import json
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class BugSetStatusParams(BaseModel):
    bug_id: str = Field(min_length=1)
    status: str


class CommentsSubscribeParams(BaseModel):
    bug_id: str = Field(min_length=1)


class CommentPostParams(BaseModel):
    bug_id: str = Field(min_length=1)
    content: str


class SubscriptionCloseParams(BaseModel):
    subscription_id: str

    @field_validator("subscription_id")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("subscription_id must not be empty")
        return v


class RPCRequest(BaseModel):
    """Generic RPC request. method determines which params to expect."""

    type: Literal["request"] = "request"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class RPCResponse(BaseModel):
    type: Literal["response"] = "response"
    id: str
    data: dict[str, Any] = Field(default_factory=dict)


class SnapshotData(BaseModel):
    subscription_id: str
    kind: Literal["board", "comments"]
    version: int
    # board: {status: [bug, ...]}; comments: {"bug_id": ..., "comments": [comment, ...]}
    payload: dict[str, Any]


class RPCSnapshot(BaseModel):
    """Pushed after every reconciliation of a subscribed collection (full state, not a diff)."""

    type: Literal["snapshot"] = "snapshot"
    id: str
    data: SnapshotData


class RPCErrorData(BaseModel):
    code: str
    message: str


class RPCError(BaseModel):
    type: Literal["error"] = "error"
    id: str
    error: RPCErrorData


def parse_rpc_request(raw: str) -> RPCRequest:
    """Parse a raw JSON string into an RPCRequest.

    Raises GatewayError(code="PARSE_ERROR") on invalid JSON or schema mismatch.
    """
    from src.infra.errors import GatewayError

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise GatewayError(f"Invalid JSON: {e}", code="PARSE_ERROR") from e
    try:
        return RPCRequest.model_validate(data)
    except Exception as e:
        raise GatewayError(f"Invalid RPC request: {e}", code="PARSE_ERROR") from e
