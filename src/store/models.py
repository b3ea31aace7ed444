"""SQLAlchemy 2.0 async models for document persistence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.constants import DB_SCHEMA


class Base(DeclarativeBase):
    pass


class DocumentRecord(Base):
    """One document of one collection. Fields live in `data` (JSONB)."""

    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_data", "data", postgresql_using="gin"),
        {"schema": DB_SCHEMA},
    )

    collection: Mapped[str] = mapped_column(String(256), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
