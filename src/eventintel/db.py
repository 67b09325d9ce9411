"""Database connection and session management."""

import zlib
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventintel.config import settings


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT works with pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str) -> Engine:
    """Create an engine, sizing the pool only for server databases."""
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables (local/dev; production uses Alembic)."""
    from eventintel.models import Base

    Base.metadata.create_all(bind or engine)


def _lock_id(lock_name: str) -> int:
    # crc32 is stable across processes, unlike hash()
    return zlib.crc32(lock_name.encode("utf-8")) % (2**31)


def acquire_advisory_lock(session: Session, lock_name: str) -> bool:
    """Acquire Postgres advisory lock (prevents concurrent runs)."""
    if session.get_bind().dialect.name != "postgresql":
        return True
    result = session.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": _lock_id(lock_name)})
    return bool(result.scalar())


def release_advisory_lock(session: Session, lock_name: str) -> None:
    """Release Postgres advisory lock."""
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": _lock_id(lock_name)})
