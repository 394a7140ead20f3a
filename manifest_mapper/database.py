"""
Persistence store plumbing.

Engine creation, the session factory and the transactional scope used by
every component that reads or writes the store.  Table definitions live in
``manifest_mapper.tables``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from manifest_mapper.logging_setup import get_logger

logger = get_logger("database")


class Base(DeclarativeBase):
    """Declarative base for all ORM tables."""


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back on reads."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for *database_url*.

    In-memory SQLite is pinned to a single shared connection so that every
    session sees the same database.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in database_url or database_url.endswith("://"):
            engine = create_engine(
                database_url,
                echo=echo,
                future=True,
                connect_args=connect_args,
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(
                database_url, echo=echo, future=True, connect_args=connect_args
            )
    else:
        engine = create_engine(database_url, echo=echo, future=True, pool_pre_ping=True)

    logger.info("Store engine created — dialect=%s", engine.dialect.name)
    return engine


def init_store(engine: Engine) -> None:
    """Create any missing tables."""
    # Registers every table on Base.metadata
    from manifest_mapper import tables  # noqa: F401

    Base.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Commit on success, roll back on any exception, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
