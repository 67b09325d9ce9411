"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

PayloadJSON = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


class RawEventStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    NORMALIZED = "normalized"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RawEvent(Base):
    """Original submission from an upstream producer (audit trail, never deleted)."""

    __tablename__ = "raw_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(PayloadJSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RawEventStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    normalized_events: Mapped[list[NormalizedEvent]] = relationship(back_populates="raw_event")

    __table_args__ = (
        Index("ix_raw_events_content_hash_status", "content_hash", "status"),
        Index("ix_raw_events_status", "status"),
    )


class NormalizedEvent(Base):
    """Canonical, typed record derived from a raw event (immutable after creation)."""

    __tablename__ = "normalized_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    metric: Mapped[str | None] = mapped_column(String(500))
    amount: Mapped[float | None] = mapped_column(Float)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    normalized_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)  # Dedup key
    raw_event_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("raw_events.id", ondelete="RESTRICT"), nullable=False
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    raw_event: Mapped[RawEvent] = relationship(back_populates="normalized_events")

    __table_args__ = (Index("ix_normalized_events_client_timestamp", "client_id", "timestamp"),)
