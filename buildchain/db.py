"""Build history database.

This module handles:
- Engine creation for the history database (SQLite by default)
- The declarative Base shared by the ORM models
- open_history(): engine, tables and session factory in one call
- get_session(): a session that commits on exit and rolls back on error
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from buildchain.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _ensure_sqlite_dir(db_url: str) -> None:
    # sqlite creates the file but not its directory
    if not db_url.startswith("sqlite:///"):
        return
    db_path = db_url.removeprefix("sqlite:///")
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the history database.

    Args:
        db_url: Database URL; defaults to ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    _ensure_sqlite_dir(db_url)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def create_all_tables(engine: Engine) -> None:
    """Create the build history tables if they do not exist."""
    # Registers BuildRecord with Base.metadata
    from buildchain.builds import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine``.

    Objects stay loaded after commit so the CLI can print them.
    """
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def open_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Open the history database, creating its tables on first use.

    Args:
        db_url: Database URL; defaults to ``Settings.db_url``.

    Returns:
        Session factory for the database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits when the block exits normally and rolls back when it raises.

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_history",
]
