"""Alembic entry point for the Movie Mimic schema."""

from __future__ import annotations

import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import engine_from_config, pool

from moviemimic.db.base import Base
from moviemimic.db.session import sync_url

config = context.config

# init_db clears this flag so migrations leave the host's logging alone.
EMBEDDED = not config.attributes.get("configure_logger", True)

if config.config_file_name is not None and not EMBEDDED:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _database_url() -> str:
    """Programmatic URLs win; the CLI may override the ini placeholder by env var."""

    raw_url = config.get_main_option("sqlalchemy.url")
    if not EMBEDDED:
        raw_url = os.getenv("MOVIEMIMIC_DB_URL") or raw_url
    if not raw_url:
        raise RuntimeError("No database URL configured for Alembic migrations.")
    return sync_url(raw_url)


def _context_options() -> dict[str, Any]:
    # SQLite cannot ALTER most constraints in place.
    return {"target_metadata": Base.metadata, "render_as_batch": True}


def run_migrations_offline() -> None:
    context.configure(url=_database_url(), literal_binds=True, **_context_options())
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    config.set_main_option("sqlalchemy.url", _database_url())
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_context_options())
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
