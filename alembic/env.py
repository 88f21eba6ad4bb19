"""Migration environment for the permgate RBAC schema.

``permgate.db.init_db`` hands over its open connection in
``config.attributes["connection"]`` and nothing else is opened.  From the
``alembic`` command line the target is ``sqlalchemy.url`` when an ini file
sets one, otherwise the database ``permgate.config.load_config()`` names
(``PERMGATE_CONF`` / ``PERMGATE_DB_PATH``).

SQLite cannot ALTER constraints, so every migration runs in batch mode.
"""

from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context
from permgate.config import load_config
from permgate.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or (
        f"sqlite:///{load_config().db_path}"
    )


def _run(**configure_kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        render_as_batch=True,
        compare_type=True,
        **configure_kwargs,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_offline() -> None:
    """Emit the migration SQL for the configured database."""
    _run(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )


def run_online() -> None:
    shared = config.attributes.get("connection")
    if shared is not None:
        _run(connection=shared)
        return

    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as conn:
            _run(connection=conn)
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
