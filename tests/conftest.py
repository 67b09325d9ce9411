"""Pytest fixtures for Event Intelligence tests."""

import os
from collections.abc import Generator
from datetime import UTC, datetime

import pytest
from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from eventintel.db import build_engine
from eventintel.ingest.hashing import normalized_event_hash, raw_event_hash
from eventintel.ingest.normalize import Normalizer
from eventintel.ingest.processor import EventProcessor
from eventintel.ingest.store import SqlEventStore
from eventintel.models import Base, NormalizedEvent, RawEvent, RawEventStatus

# Test database URL - in-memory SQLite unless a Postgres URL is supplied
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


@pytest.fixture(scope="session")
def engine():
    """Create test database engine."""
    engine = build_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> Generator[sessionmaker, None, None]:
    """Sessions joined to one outer transaction that is rolled back after each test.

    Commits inside the code under test only release savepoints.
    """
    connection = engine.connect()
    transaction = connection.begin()

    factory = sessionmaker(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield factory

    transaction.rollback()
    connection.close()


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Provide a session inside the per-test transaction."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(session_factory) -> SqlEventStore:
    return SqlEventStore(session_factory)


@pytest.fixture
def processor(store) -> EventProcessor:
    return EventProcessor(store=store, normalizer=Normalizer())


@pytest.fixture
def make_normalized_event(db_session: Session):
    """Insert a committed raw + normalized event pair directly."""

    def _make(client_id: str, amount: float | None = None, metric: str | None = None, timestamp=None):
        payload = {"metric": metric, "amount": amount, "timestamp": timestamp.isoformat() if timestamp else None}
        raw = RawEvent(
            source=client_id,
            payload=payload,
            content_hash=raw_event_hash(client_id, payload),
            status=RawEventStatus.NORMALIZED.value,
        )
        db_session.add(raw)
        db_session.flush()
        event = NormalizedEvent(
            client_id=client_id,
            metric=metric,
            amount=amount,
            timestamp=timestamp,
            normalized_hash=normalized_event_hash(client_id, metric, amount),
            raw_event_id=raw.id,
        )
        db_session.add(event)
        db_session.commit()
        return event

    return _make


@pytest.fixture
def jan_first() -> datetime:
    return datetime(2024, 1, 1, tzinfo=UTC)


@pytest.fixture
def committing_store(tmp_path) -> Generator[SqlEventStore, None, None]:
    """Store whose units get their own connections and really commit.

    SQLite runs against a file so separate sessions share one database.
    Rows are deleted afterwards.
    """
    url = TEST_DATABASE_URL
    if url.startswith("sqlite"):
        url = f"sqlite+pysqlite:///{tmp_path / 'events.db'}"
    engine = build_engine(url)
    Base.metadata.create_all(engine)

    yield SqlEventStore(sessionmaker(bind=engine, autoflush=False))

    with engine.begin() as connection:
        connection.execute(delete(NormalizedEvent))
        connection.execute(delete(RawEvent))
    engine.dispose()
