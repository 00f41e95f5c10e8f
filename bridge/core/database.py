"""Shared SQLAlchemy engine and session factory.

The bridge runs synchronously end to end: Celery workers process one job at
a time and the FastAPI routes are plain ``def`` endpoints served from the
threadpool. A single SYNC engine is created per process and reused by both.
"""

from collections.abc import Generator
from contextlib import contextmanager

import structlog
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bridge.core.config import settings

logger = structlog.get_logger()


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {
        "pool_size": 10,
        "max_overflow": 5,
        "pool_pre_ping": True,     # Drop stale connections before reuse
        "pool_recycle": 1800,      # Recycle connections every 30 min
        "connect_args": {
            "options": (
                "-c statement_timeout=60000 "                    # 60s per statement
                "-c idle_in_transaction_session_timeout=120000"  # 120s idle-in-tx
            )
        },
    }


engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.APP_DEBUG,
    **_engine_options(settings.DATABASE_URL),
)

SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Context manager that yields a sync SQLAlchemy session.

    Commits on clean exit, rolls back on exception, and always closes.

    Usage::

        with get_db_session() as session:
            mapping = session.get(ContactMapping, mapping_id)
    """
    session: Session = SessionFactory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, committed on success."""
    with get_db_session() as session:
        yield session
