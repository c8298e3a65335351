"""Database connection management for AgentVault.

Builds SQLAlchemy engines and session factories. Supports SQLite for
local use with any SQLAlchemy URL accepted for deployments.

Usage:
    from agentvault.db.connection import create_db_engine, create_session_factory, init_db

    engine = create_db_engine()
    init_db(engine)  # Create tables
    SessionLocal = create_session_factory(engine)
    with session_scope(SessionLocal) as db:
        ...
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from agentvault.db.models import Base


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. AGENTVAULT_DB_PATH (converted to sqlite URL)
    3. sqlite:///<platform data dir>/agentvault.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("AGENTVAULT_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from agentvault.utils.paths import ensure_dirs_exist, get_default_db_path
    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers plus a single writer.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


def create_db_engine(url: str | None = None, **kwargs: Any) -> Engine:
    """Create a sync engine for the given URL (defaults to get_database_url()).

    Args:
        url: SQLAlchemy database URL.
        **kwargs: Extra create_engine arguments (e.g. poolclass for tests).

    Returns:
        Configured Engine. SQLite engines get the pragma listener.
    """
    url = url or get_database_url()
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(
        url,
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
        **kwargs,
    )
    if is_sqlite:
        event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build the session factory used by every service."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Context manager for a unit of work: commit on success, rollback on error.

    Usage:
        with session_scope(SessionLocal) as db:
            db.add(row)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """Create all database tables.

    Safe to call multiple times - will not recreate existing tables.
    """
    Base.metadata.create_all(bind=engine)


def close_db(engine: Engine) -> None:
    """Dispose of the engine's connection pool."""
    engine.dispose()
