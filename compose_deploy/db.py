"""Local release store database.

This module provides the declarative base for the release models, engine
and session helpers, and open_release_store(), which prepares a database
for use by SqlReleaseBackend.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from compose_deploy.config import get_settings

SQLITE_MEMORY_PATHS = ("", ":memory:")


class Base(DeclarativeBase):
    """Base class for the release store models."""

    pass


def _sqlite_options(db_url: str) -> dict[str, Any]:
    """Return create_engine() options for a SQLite URL.

    Service images are updated from push worker threads, so connections
    must be usable across threads. An in-memory database exists only
    within its connection and is therefore held in a single static pool.
    File databases get their parent directory created.
    """
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    db_path = db_url.split("://", 1)[1].removeprefix("/")
    if db_path in SQLITE_MEMORY_PATHS:
        options["poolclass"] = StaticPool
    else:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return options


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the release store.

    Args:
        db_url: Database URL; defaults to the configured db_url.

    Returns:
        SQLAlchemy Engine.
    """
    if db_url is None:
        db_url = get_settings().db_url

    options = _sqlite_options(db_url) if db_url.startswith("sqlite") else {}
    return create_engine(db_url, echo=False, **options)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create a session factory whose objects stay usable after commit."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Run a block in one transaction, committed on success.

    Args:
        session_factory: Session factory of the release store.

    Yields:
        Session, rolled back if the block raises.
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


def create_all_tables(engine: Engine) -> None:
    """Create the release store tables if they do not exist."""
    # Registers Release and ServiceImage on Base.metadata
    from compose_deploy.release import models as release_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_release_store(db_url: str | None = None) -> sessionmaker[Session]:
    """Open (and initialize if needed) the release store.

    Args:
        db_url: Database URL; defaults to the configured db_url.

    Returns:
        Session factory bound to the initialized database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_release_store",
]
