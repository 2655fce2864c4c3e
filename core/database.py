"""
core/database.py -- SQLAlchemy engine factory shared by every store.

One engine per process; the auth stores receive it through their constructors
so they share a single connection pool.

SQLite specifics:
  WAL journal mode is enabled per connection so readers never block on the
  writer.

  pysqlite's implicit transaction handling is switched off and every
  transaction starts with BEGIN IMMEDIATE instead. The write lock is taken up
  front, so two threads racing on the same refresh token queue on the busy
  timeout rather than one of them failing a lock upgrade mid-transaction.
  This is the recipe from the SQLAlchemy pysqlite dialect documentation.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    # Hand transaction control to the "begin" listener below.
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_immediate(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(db_url: str) -> Engine:
    """Create an Engine for db_url, applying the SQLite listeners when relevant."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
        event.listen(engine, "begin", _begin_immediate)
    return engine


def check_db_connected(engine: Engine) -> bool:
    """Run a trivial query to verify the database is reachable."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
