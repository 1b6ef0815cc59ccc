from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# Import application metadata so autogenerate sees every table, including the ledger sinks
from roomsync.db import Base, DATABASE_URL
from roomsync import models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Detect column type and server default changes during autogenerate
COMPARE_OPTS = {"compare_type": True, "compare_server_default": True}


def run_migrations_offline() -> None:
    """Emit SQL for DATABASE_URL without connecting (alembic upgrade --sql)."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE_OPTS,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = DATABASE_URL

    connectable = engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            # SQLite cannot ALTER constraints in place; batch mode rebuilds the table
            render_as_batch=connection.dialect.name == "sqlite",
            **COMPARE_OPTS,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
