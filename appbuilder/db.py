"""Database engine and session management for appbuilder.

This module handles:
- Engine creation, with SQLite tuned for build workers writing from
  several threads (WAL journal, busy timeout)
- Session factory and a commit/rollback session scope
- The declarative base and table creation for ORM models
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from appbuilder.config import get_settings

# Milliseconds a SQLite writer waits for a competing transaction
SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:")


def _sqlite_pragmas(journal_mode: str | None) -> Any:
    def on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            if journal_mode:
                cursor.execute(f"PRAGMA journal_mode={journal_mode}")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()

    return on_connect


def get_engine(db_url: str | None = None) -> Engine:
    """Create and return a SQLAlchemy engine.

    SQLite connections may be shared across build worker threads and wait
    for locks instead of failing with "database is locked". File databases
    also switch to the WAL journal so readers never block the writer.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)

    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    journal_mode = None if _is_memory_sqlite(db_url) else "WAL"
    event.listen(engine, "connect", _sqlite_pragmas(journal_mode))
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Records stay readable after commit, since orchestrator results are
    returned to callers outside the session.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance, committed on success and rolled back
        on error.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build tables if they do not exist yet."""
    # Import models so they are registered with the mapper
    from appbuilder.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "SQLITE_BUSY_TIMEOUT_MS",
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
