"""Bug and Comment entities as they appear in the synchronized collections."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from src.infra.errors import MalformedDocumentError


class BugStatus(StrEnum):
    open = "Open"
    in_progress = "In Progress"
    resolved = "Resolved"


class Priority(StrEnum):
    low = "Low"
    medium = "Medium"
    high = "High"
    critical = "Critical"


def _as_utc(v: datetime) -> datetime:
    return v.replace(tzinfo=UTC) if v.tzinfo is None else v


def _describe(e: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'document'}: {err['msg']}"
        for err in e.errors()
    )


class _Entity(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    created_at: datetime = Field(alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> Self:
        """Parse a store document. Raises MalformedDocumentError on missing/invalid fields."""
        try:
            return cls.model_validate({**data, "id": doc_id})
        except PydanticValidationError as e:
            raise MalformedDocumentError(doc_id, _describe(e)) from e

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Bug(_Entity):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    status: BugStatus = BugStatus.open
    priority: Priority = Priority.medium
    reporter_id: str = Field(alias="reporterId", min_length=1)
    image_url: str | None = Field(None, alias="imageUrl")

    @field_validator("title", "description")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class Comment(_Entity):
    bug_id: str = Field(alias="bugId", min_length=1)
    content: str = Field(min_length=1)
    author_id: str = Field(alias="authorId", min_length=1)


class NewBug(BaseModel):
    """User input for a bug report, before the store assigns id and createdAt."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str
    priority: Priority = Priority.medium
    image_url: str | None = Field(None, alias="imageUrl")

    @field_validator("title", "description")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v
