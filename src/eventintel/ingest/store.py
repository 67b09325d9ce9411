"""Storage contract for the ingestion core and its SQLAlchemy implementation.

A unit of work is one Session transaction. Uniqueness of
raw_events.content_hash and normalized_events.normalized_hash is enforced
by the database; check-then-act alone is not relied on.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventintel.config import settings
from eventintel.exceptions import UniqueConstraintViolation
from eventintel.ingest.hashing import json_document
from eventintel.ingest.normalize import NormalizedRecord
from eventintel.models import NormalizedEvent, RawEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class NormalizedEventFilter:
    client_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = None
    skip: int = 0


@dataclass(frozen=True)
class RawEventFilter:
    status: str | None = None
    source: str | None = None
    limit: int | None = None
    skip: int = 0


class UnitOfWork(Protocol):
    def find_raw_event_by_hash(self, content_hash: str, status_in: Collection[str] | None = None) -> RawEvent | None: ...

    def upsert_raw_event_if_absent(
        self, content_hash: str, source: str, payload: Any, initial_status: str
    ) -> RawEvent: ...

    def update_raw_event_status(self, raw_event_id: UUID, status: str, error_message: str | None = None) -> None: ...

    def find_normalized_event_by_hash(self, normalized_hash: str) -> NormalizedEvent | None: ...

    def insert_normalized_event(self, record: NormalizedRecord, raw_event_id: UUID) -> NormalizedEvent: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class EventStore(Protocol):
    def begin_unit(self) -> UnitOfWork: ...

    def commit(self, unit: UnitOfWork) -> None: ...

    def rollback(self, unit: UnitOfWork) -> None: ...

    def count_raw_events_by_status(self, status: str) -> int: ...

    def count_normalized_events(self) -> int: ...

    def scan_normalized_events(self, event_filter: NormalizedEventFilter) -> list[NormalizedEvent]: ...


def _is_unique_violation(error: IntegrityError) -> bool:
    orig = error.orig
    if getattr(orig, "sqlstate", None) == "23505":  # psycopg unique_violation
        return True
    message = str(orig).lower()
    return "unique" in message or "duplicate key" in message


def _clamp_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        limit = settings.default_page_size
    return min(limit, settings.max_page_size)


class SqlUnitOfWork:
    """All reads and writes of one processing attempt, in one transaction."""

    def __init__(self, session: Session):
        self.session = session
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def find_raw_event_by_hash(self, content_hash: str, status_in: Collection[str] | None = None) -> RawEvent | None:
        stmt = select(RawEvent).where(RawEvent.content_hash == content_hash)
        if status_in is not None:
            stmt = stmt.where(RawEvent.status.in_(list(status_in)))
        return self.session.scalars(stmt).first()

    def upsert_raw_event_if_absent(self, content_hash: str, source: str, payload: Any, initial_status: str) -> RawEvent:
        """Get-or-create keyed by content hash; an existing row is never overwritten."""
        now = datetime.now(UTC)
        values = {
            "id": uuid4(),
            "source": source,
            "payload": json_document(payload),
            "content_hash": content_hash,
            "status": initial_status,
            "received_at": now,
            "updated_at": now,
        }
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(RawEvent).values(**values).on_conflict_do_nothing(index_elements=["content_hash"])
            self.session.execute(stmt)
        elif dialect == "sqlite":
            stmt = sqlite_insert(RawEvent).values(**values).on_conflict_do_nothing(index_elements=["content_hash"])
            self.session.execute(stmt)
        else:
            try:
                with self.session.begin_nested():
                    self.session.add(RawEvent(**values))
            except IntegrityError as e:
                if not _is_unique_violation(e):
                    raise

        raw_event = self.session.scalars(
            select(RawEvent).where(RawEvent.content_hash == content_hash).execution_options(populate_existing=True)
        ).one()
        return raw_event

    def update_raw_event_status(self, raw_event_id: UUID, status: str, error_message: str | None = None) -> None:
        raw_event = self.session.get(RawEvent, raw_event_id)
        if raw_event is None:
            raise LookupError(f"Raw event not found: {raw_event_id}")
        raw_event.status = status
        raw_event.error_message = error_message
        raw_event.updated_at = datetime.now(UTC)
        self.session.flush()

    def find_normalized_event_by_hash(self, normalized_hash: str) -> NormalizedEvent | None:
        stmt = select(NormalizedEvent).where(NormalizedEvent.normalized_hash == normalized_hash)
        return self.session.scalars(stmt).first()

    def insert_normalized_event(self, record: NormalizedRecord, raw_event_id: UUID) -> NormalizedEvent:
        """Insert inside a savepoint so a hash collision leaves the unit usable."""
        normalized_event = NormalizedEvent(
            client_id=record.client_id,
            metric=record.metric,
            amount=record.amount,
            timestamp=record.timestamp,
            normalized_hash=record.normalized_hash,
            raw_event_id=raw_event_id,
        )
        try:
            with self.session.begin_nested():
                self.session.add(normalized_event)
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise UniqueConstraintViolation("normalized_events", record.normalized_hash) from e
            raise
        return normalized_event

    def commit(self) -> None:
        try:
            self.session.commit()
        finally:
            self._close()

    def rollback(self) -> None:
        if self._closed:
            return
        try:
            self.session.rollback()
        finally:
            self._close()

    def _close(self) -> None:
        self._closed = True
        self.session.close()


class SqlEventStore:
    """EventStore backed by a SQLAlchemy sessionmaker."""

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        if session_factory is None:
            from eventintel.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def begin_unit(self) -> SqlUnitOfWork:
        return SqlUnitOfWork(self._session_factory())

    def commit(self, unit: UnitOfWork) -> None:
        unit.commit()

    def rollback(self, unit: UnitOfWork) -> None:
        unit.rollback()

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def count_raw_events_by_status(self, status: str) -> int:
        with self._read_session() as session:
            stmt = select(func.count()).select_from(RawEvent).where(RawEvent.status == status)
            return int(session.scalar(stmt) or 0)

    def count_normalized_events(self) -> int:
        with self._read_session() as session:
            return int(session.scalar(select(func.count()).select_from(NormalizedEvent)) or 0)

    def _normalized_query(self, event_filter: NormalizedEventFilter):  # type: ignore[no-untyped-def]
        stmt = select(NormalizedEvent)
        if event_filter.client_id:
            stmt = stmt.where(NormalizedEvent.client_id == event_filter.client_id)
        # NULL timestamps never satisfy a range comparison, so they drop out here.
        if event_filter.start is not None:
            stmt = stmt.where(NormalizedEvent.timestamp >= event_filter.start)
        if event_filter.end is not None:
            stmt = stmt.where(NormalizedEvent.timestamp <= event_filter.end)
        return stmt

    def scan_normalized_events(self, event_filter: NormalizedEventFilter) -> list[NormalizedEvent]:
        with self._read_session() as session:
            stmt = self._normalized_query(event_filter).order_by(NormalizedEvent.processed_at)
            return list(session.scalars(stmt).all())

    def list_normalized_events(self, event_filter: NormalizedEventFilter) -> tuple[list[NormalizedEvent], int]:
        """Page of normalized events, newest timestamp first, plus the total match count."""
        stmt = self._normalized_query(event_filter)
        with self._read_session() as session:
            total = int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
            page = (
                stmt.order_by(NormalizedEvent.timestamp.desc().nulls_last(), NormalizedEvent.processed_at.desc())
                .offset(max(event_filter.skip, 0))
                .limit(_clamp_limit(event_filter.limit))
            )
            return list(session.scalars(page).all()), total

    def list_raw_events(self, event_filter: RawEventFilter) -> tuple[list[RawEvent], int]:
        """Page of raw events, most recently received first, plus the total match count."""
        stmt = select(RawEvent)
        if event_filter.status:
            stmt = stmt.where(RawEvent.status == event_filter.status)
        if event_filter.source:
            stmt = stmt.where(RawEvent.source == event_filter.source)
        with self._read_session() as session:
            total = int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
            page = (
                stmt.order_by(RawEvent.received_at.desc())
                .offset(max(event_filter.skip, 0))
                .limit(_clamp_limit(event_filter.limit))
            )
            return list(session.scalars(page).all()), total
