"""
env.py — Alembic environment for the ChannelSync schema

Business Rules:
- The URL comes from DATABASE_URL (channelsync settings); `alembic -x db_url=...`
  overrides it for one run, e.g. to migrate a staging copy
- Every model is imported through channelsync.models so autogenerate sees
  accounts, inventory, rules, jobs, ledger and orders
- Column type changes are compared; SQLite runs in batch mode so ALTERs work
- Transaction per migration

Called by: alembic CLI
Depends on: channelsync.models (Base + all tables), channelsync.config (settings)
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from channelsync.config import Settings
from channelsync.models import Base  # noqa: F401 — imports all models via Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

db_url = context.get_x_argument(as_dictionary=True).get("db_url") or Settings().database_url
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def _options(sqlite: bool) -> dict:
    return {"target_metadata": target_metadata, "compare_type": True, "render_as_batch": sqlite}


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a connection."""
    context.configure(
        url=db_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_options(db_url.startswith("sqlite")),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_options(connection.dialect.name == "sqlite"))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
