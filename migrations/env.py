import logging
import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

# CLI runs (`alembic upgrade head`) read DATABASE_URL / DATABASE_PATH from .env
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

config = context.config


def _database_url() -> str:
    """The URL init_db() passed in, else one built from the environment."""
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    database_url = os.getenv("DATABASE_URL", "")
    if database_url.startswith("postgresql://"):
        return database_url
    return f"sqlite:///{os.getenv('DATABASE_PATH', 'practice_engine.db')}"


config.set_main_option("sqlalchemy.url", _database_url())

# Inside the server the root logger is already configured by run.py
if config.config_file_name is not None and not logging.getLogger().handlers:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Migrations are raw SQL from practice_engine/db/schema.sql, no ORM metadata
target_metadata = None


def _batch_mode() -> bool:
    # SQLite cannot ALTER most constraints in place
    return config.get_main_option("sqlalchemy.url").startswith("sqlite")


def run_migrations_offline() -> None:
    """Emit the migration SQL without a live connection."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_batch_mode(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as conn:
        context.configure(
            connection=conn,
            target_metadata=target_metadata,
            render_as_batch=_batch_mode(),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
