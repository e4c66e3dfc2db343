"""Database connection, initialization and transaction helper."""

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, Session, create_engine

from watermeter.config import settings

# Import all models so SQLModel registers them
import watermeter.models  # noqa: F401

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_engine(db_url: str, echo: bool = False) -> Engine:
    """Create a SQLite engine tuned for concurrent writers."""
    new_engine = create_engine(
        db_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": settings.db_busy_timeout},
    )

    @event.listens_for(new_engine, "connect")
    def _set_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return new_engine


engine = make_engine(f"sqlite:///{settings.db_path}", echo=settings.debug)


def init_db(target: Engine | None = None) -> None:
    """Create all tables and enable WAL mode."""
    target = target or engine
    SQLModel.metadata.create_all(target)

    # WAL lets readers proceed while a settlement transaction holds the write lock
    with target.connect() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
        conn.commit()


def get_session():
    """FastAPI dependency: yields a database session."""
    with Session(engine) as session:
        yield session


def _is_contention(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "locked" in message or "busy" in message


def run_in_transaction(
    target: Engine,
    fn: Callable[[Session], T],
    retries: int | None = None,
) -> T:
    """Run ``fn`` in a fresh session and commit.

    Only storage contention is retried. Anything ``fn`` raises on purpose
    rolls the transaction back and propagates unchanged.
    """
    attempts = max(1, retries if retries is not None else settings.tx_max_retries)
    for attempt in range(1, attempts + 1):
        with Session(target) as session:
            try:
                result = fn(session)
                session.commit()
                return result
            except OperationalError as e:
                session.rollback()
                if not _is_contention(e) or attempt == attempts:
                    raise
                logger.warning(
                    "Storage contention (attempt %d/%d): %s", attempt, attempts, e.orig
                )
        time.sleep(settings.tx_retry_backoff * attempt)
    raise RuntimeError("unreachable")
