"""
Database engine, session factory, and metadata shared across the scheduling core.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def enable_sqlite_write_locks(sqlite_engine: Engine) -> None:
    """
    Start every transaction on ``sqlite_engine`` with ``BEGIN IMMEDIATE``.

    SQLite ignores ``SELECT ... FOR UPDATE`` and pysqlite only emits BEGIN
    before the first write, so two approvals could both read a free slot.
    Taking the database write lock when the transaction opens makes the
    second writer wait until the first commits, then re-read.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _defer_to_explicit_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str) -> Engine:
    """Create an engine for ``url`` with the pool and locking settings the services expect."""
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}, "future": True}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(url, **kwargs)
        enable_sqlite_write_locks(sqlite_engine)
        return sqlite_engine

    connect_args: dict[str, Any] = {"connect_timeout": settings.db_pool_timeout}
    if settings.db_statement_timeout_ms:
        # Statement timeout caps runaway queries so callers get a retryable error
        connect_args["options"] = f"-c statement_timeout={settings.db_statement_timeout_ms}"

    return create_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=1800,
        pool_pre_ping=True,
        connect_args=connect_args,
        future=True,
    )


engine: Engine = build_engine(settings.database_url)


@event.listens_for(engine, "connect")
def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
    connection_record.info["connect_time"] = datetime.now()
    logger.debug("Database connection established")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    """Yield a session and guarantee it is closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables on ``bind`` (defaults to the configured engine)."""
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


__all__ = ["Base", "SessionLocal", "build_engine", "enable_sqlite_write_locks", "engine", "get_db", "init_db"]
