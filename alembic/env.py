from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from ticket_triggers.core.config import settings
from ticket_triggers.db.base import Base


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Alembic runs on a sync driver; strip the async driver suffix.
sync_db_url = settings.database_url.replace("+aiosqlite", "").replace("+asyncpg", "+psycopg")
config.set_main_option("sqlalchemy.url", sync_db_url)

target_metadata = Base.metadata


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
