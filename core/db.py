"""
core/db.py -- SQLAlchemy engine factory shared by every durable store.

UserStore, MFAStore, SqlSessionStore and AuditLogger each own a Table on the
shared MetaData below and receive an Engine from make_engine(). Keeping the
engine setup in one place means SQLite pragmas and thread settings are applied
identically no matter which store opens the database first.

Layer rule: core/ is the kernel. No imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout for concurrent access.

    WAL allows readers to proceed without blocking during writes; the busy
    timeout makes concurrent writers wait for the lock instead of failing
    immediately. Set per-connection because SQLite PRAGMAs are not inherited
    by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url with SQLite-specific connection settings."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine
