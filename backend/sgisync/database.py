import logging
from contextlib import contextmanager
from typing import Any
from typing import Iterator

from fastapi import Request
from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from sgisync.config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()

# Create Base class
Base = declarative_base()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        connect_args.setdefault("timeout", 30)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after a commit so the
    reconciliation engine can serialise a row for broadcast once the
    transaction is closed.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


# Default engine and sessionmaker instances for app usage.  Tests build their
# own in-memory engine and hand the factory to ``create_app`` instead.

_resolved_db_url = _settings.database_url or ("sqlite:///:memory:" if _settings.testing else "sqlite:///./sgi_sync.db")

default_engine = make_engine(_resolved_db_url)
default_session_factory = make_sessionmaker(default_engine)


def get_session_factory() -> sessionmaker:
    """Return the process-wide default session factory."""
    return default_session_factory


def get_db(request: Request) -> Iterator[Session]:
    """Dependency provider for database sessions.

    Uses the factory the application was built with (``app.state``) so that
    REST handlers and WebSocket handlers always talk to the same database.

    Yields:
        SQLAlchemy Session object
    """
    factory = getattr(request.app.state, "session_factory", None) or get_session_factory()
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(session_factory: Any = None):
    """Session context manager for services and WebSocket handlers.

    1. Auto-commit on success
    2. Auto-rollback on error
    3. Always close session

    Usage:
        with db_session(factory) as db:
            crud.create_agenda_event(db, ...)
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session rolled back due to error: {e}")
        raise
    finally:
        session.close()


def initialize_database(engine: Engine = None) -> None:
    """Create all tables on *engine* (defaults to :data:`default_engine`)."""

    # Import the models so they are registered with Base
    from sgisync.models.models import AgendaEvent  # noqa: F401
    from sgisync.models.models import EventAttendee  # noqa: F401
    from sgisync.models.models import Notification  # noqa: F401
    from sgisync.models.models import SyncTombstone  # noqa: F401
    from sgisync.models.models import User  # noqa: F401

    Base.metadata.create_all(bind=engine or default_engine)


__all__ = [
    "Base",
    "make_engine",
    "make_sessionmaker",
    "get_session_factory",
    "get_db",
    "db_session",
    "initialize_database",
]
