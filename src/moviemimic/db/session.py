"""Engine construction, transactional scopes and schema migration."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from sqlalchemy import event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite+aiosqlite:///./movie-mimic.db"
ALEMBIC_INI = Path(__file__).resolve().parents[3] / "alembic.ini"

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def create_engine(db_url: str | None = None, *, echo: bool = False) -> AsyncEngine:
    """Create an :class:`AsyncEngine`; SQLite connections get WAL and FK enforcement."""

    engine = create_async_engine(
        db_url or os.getenv("MOVIEMIMIC_DB_URL") or DEFAULT_DB_URL, echo=echo
    )
    if engine.url.get_backend_name() != "sqlite":
        return engine

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    return engine


def get_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a sessionmaker whose objects stay readable after commit."""

    return async_sessionmaker(engine, expire_on_commit=False)


def sync_url(url: str | URL) -> str:
    """Render ``url`` with the blocking driver of its backend, for Alembic."""

    parsed = make_url(url) if isinstance(url, str) else url
    backend = parsed.get_backend_name()
    if parsed.drivername != backend:
        parsed = parsed.set(drivername=backend)
    return parsed.render_as_string(hide_password=False)


def migration_config(engine: AsyncEngine) -> Config:
    """Alembic configuration targeting ``engine``'s database."""

    if not ALEMBIC_INI.exists():
        raise FileNotFoundError(f"Alembic configuration missing at {ALEMBIC_INI}")
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", sync_url(engine.url))
    # The host application owns logging; env.py must not reconfigure it.
    config.attributes["configure_logger"] = False
    return config


async def init_db(engine: AsyncEngine) -> None:
    """Upgrade the schema to the latest revision; safe to call repeatedly."""

    config = migration_config(engine)
    await asyncio.to_thread(command.upgrade, config, "head")
    logger.debug("Schema at head for %s", engine.url.render_as_string(hide_password=True))


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Commit on success and roll back on any exception."""

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
