"""Alembic environment for the mailsync schema (DATABASE_URL from mailsync settings)."""
import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import NullPool

backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from mailsync.config import settings  # noqa: E402
from mailsync.models import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_url = make_url(settings.database_url)
if _url.drivername == "postgresql":
    _url = _url.set(drivername="postgresql+psycopg")
IS_SQLITE = _url.drivername.startswith("sqlite")
# render_as_string keeps the password; str(URL) would mask it.
DB_URL = _url.render_as_string(hide_password=False)


def _connect_args() -> dict:
    if IS_SQLITE:
        return {"check_same_thread": False}
    if _url.port == 6543:
        # Supavisor transaction pooler rejects prepared statements
        return {"prepare_threshold": None}
    return {}


def run_migrations_offline():
    context.configure(
        url=DB_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=IS_SQLITE,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    section = config.get_section(config.config_ini_section, {}) or {}
    section["sqlalchemy.url"] = DB_URL
    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=NullPool,
        connect_args=_connect_args(),
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # SQLite cannot ALTER most columns in place
            render_as_batch=IS_SQLITE,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
