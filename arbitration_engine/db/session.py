"""
Database Session Management
===========================

PostgreSQL connection handling with SQLAlchemy (SQLite for development/tests).

Sessions opened through ``get_db_session`` commit on success, roll back on
error, and then run any callbacks registered with ``after_commit``. Callbacks
carry side effects that must only happen once the transition is durable
(notifications, settlement hand-off).
"""

import os
import logging
from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import QueuePool

from .models import Base
from ..config import get_settings
from ..errors import StateConflict

logger = logging.getLogger(__name__)

_engine = None
_engine_url = None

# Session factory is configured lazily (important for tests that set DATABASE_URL at runtime).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

_AFTER_COMMIT_KEY = "after_commit_callbacks"


def _current_database_url() -> str:
    # Default to SQLite for development/testing, use DATABASE_URL for production PostgreSQL
    return os.environ.get("DATABASE_URL") or get_settings().database_url


def _create_engine_for_url(database_url: str):
    echo = os.environ.get("SQL_ECHO", "false").lower() == "true"

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 15},
            echo=echo,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": int(os.environ.get("DB_CONNECT_TIMEOUT", "5")),
        },
        echo=echo,
    )


def get_engine():
    """Get the SQLAlchemy engine"""
    global _engine, _engine_url
    database_url = _current_database_url()
    if _engine is None or _engine_url != database_url:
        _engine = _create_engine_for_url(database_url)
        _engine_url = database_url
        SessionLocal.configure(bind=_engine)
    return _engine


def reset_engine():
    """Reset engine/sessionmaker (primarily for tests)."""
    global _engine, _engine_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    SessionLocal.configure(bind=None)


def init_db():
    """Initialize database tables"""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)


def after_commit(db: Session, callback: Callable[[], None]) -> None:
    """Queue ``callback`` to run once ``db`` has committed."""
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def _run_after_commit(db: Session) -> None:
    callbacks = db.info.pop(_AFTER_COMMIT_KEY, [])
    for callback in callbacks:
        try:
            callback()
        except Exception:
            # The transition is already durable; a failing side effect is logged, not raised
            logger.exception("after-commit callback failed")


def _discard(db: Session) -> None:
    db.rollback()
    db.info.pop(_AFTER_COMMIT_KEY, None)


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Context manager for one atomic unit of work.

    Usage:
        with get_db_session() as db:
            db.query(DisputeCase).all()
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        _discard(db)
        raise StateConflict("Record was modified by a concurrent request; retry the operation") from e
    except SAIntegrityError as e:
        _discard(db)
        raise StateConflict(f"Write rejected by a uniqueness or integrity constraint: {e.orig}") from e
    except Exception:
        _discard(db)
        raise
    else:
        _run_after_commit(db)
    finally:
        db.close()
