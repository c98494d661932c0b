"""
core/store.py — Persistence handle.

A Store owns the SQLAlchemy engine and session factory for one application
instance. Services receive the Store at construction instead of importing
a module-level engine, and the app lifespan drives open() / close().

Lifecycle: Store(url) -> open() -> session() ... -> close()
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from core.base import Base

log = logging.getLogger("rsl.store")


def _is_memory_url(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url


class Store:
    """Engine, sessions, and schema for one database."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        # In-memory SQLite only exists on one connection; share it.
        poolclass = StaticPool if _is_memory_url(database_url) else NullPool
        self.engine = create_engine(
            database_url,
            echo=echo,
            poolclass=poolclass,
            connect_args=connect_args,
        )
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        self._sessionmaker = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "Store":
        """Create any missing tables. Safe to call more than once."""
        # Model modules register their tables on Base.metadata at import time.
        Base.metadata.create_all(bind=self.engine)
        self._open = True
        log.info(f"Store opened ({len(Base.metadata.tables)} tables)")
        return self

    def close(self) -> None:
        self.engine.dispose()
        self._open = False
        log.info("Store closed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Unit of work: commits on success, rolls back on any exception."""
        db = self._sessionmaker()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            log.warning("Store ping failed", exc_info=True)
            return False


def _sqlite_pragmas(dbapi_conn, _record):
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA busy_timeout=5000")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA journal_mode=WAL")
    finally:
        cur.close()
