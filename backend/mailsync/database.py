"""Database engine and sessions.

Sync engines back everything: the FastAPI handlers (run in the threadpool),
Celery workers, CLI scripts and Alembic.
"""

from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def enable_sqlite_savepoints(engine) -> None:
    """
    pysqlite defers BEGIN until the first DML, which breaks SAVEPOINT
    (`Session.begin_nested()`). Take over transaction control so per-record
    savepoints nest inside the step transaction.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


raw_url: URL = make_url(settings.database_url)
is_transaction_pooler: bool = (raw_url.port == 6543)

# SQLite: NullPool so each thread gets its own connection.
# check_same_thread=False allows different threads to open connections.
sync_connect_args: dict = {}
if _is_sqlite(raw_url):
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    sync_connect_args = {"check_same_thread": False, "timeout": timeout_s}
    sync_engine = create_engine(
        raw_url,
        connect_args=sync_connect_args,
        poolclass=NullPool,
    )

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        """
        Improve concurrency characteristics for SQLite.
        - WAL: allows concurrent readers (status polling) while a sync writes
        - busy_timeout: wait for locks instead of failing immediately
        """
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()
        except Exception:
            # Pragmas are best-effort; don't block app start if they fail.
            pass

    enable_sqlite_savepoints(sync_engine)
else:
    # If user provided plain postgresql://..., force psycopg.
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = _with_driver(sync_url, "postgresql+psycopg")
    # Supavisor transaction mode does not support prepared statements.
    if is_transaction_pooler:
        sync_connect_args = {"prepare_threshold": None}
    sync_engine = create_engine(
        sync_url,
        connect_args=sync_connect_args,
        pool_pre_ping=True,
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_max_overflow)),
        pool_timeout=max(1, int(settings.db_pool_timeout_s)),
        pool_recycle=max(0, int(settings.db_pool_recycle_s)),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)


def init_db():
    """
    Create tables on SQLite only.

    We avoid implicit `create_all()` on Postgres; schema is managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)


def get_sync_db() -> Generator:
    """FastAPI dependency that yields a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

