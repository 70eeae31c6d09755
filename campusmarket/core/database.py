"""
Database engine and session management using SQLAlchemy.
Uses synchronous SQLite locally; swap DATABASE_URL to PostgreSQL for
row-level locking in production.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from campusmarket.core.config import get_settings
from campusmarket.core.errors import ConcurrentUpdateError

logger = logging.getLogger(__name__)

settings = get_settings()

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=settings.DEBUG,
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Ensures proper cleanup after each request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Run a block as one committed unit of work.
    Any exception rolls the whole unit back before propagating; a lost
    optimistic-lock race surfaces as ConcurrentUpdateError.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent update detected, unit rolled back: %s", exc)
        raise ConcurrentUpdateError() from exc
    except Exception:
        db.rollback()
        raise


def init_db() -> None:
    """Create all database tables from model metadata."""
    import campusmarket.models  # noqa: F401  (registers every table on Base)

    Base.metadata.create_all(bind=engine)
