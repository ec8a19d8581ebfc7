"""Smoke tests for database schema migrations."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect

from moviemimic.db import create_engine, init_db

EXPECTED_TABLES = {"videos", "sessions", "recordings", "exports"}


def _list_tables(connection) -> list[str]:
    """Return all table names present in the connected database."""

    inspector = inspect(connection)
    return inspector.get_table_names()


def _list_indexes(connection) -> set[str]:
    inspector = inspect(connection)
    return {
        index["name"]
        for table in EXPECTED_TABLES
        for index in inspector.get_indexes(table)
    }


@pytest.mark.asyncio
async def test_alembic_migrations_initialize_schema(tmp_path: Path) -> None:
    """Applying migrations should create the expected tables on an empty database."""

    db_file = tmp_path / "alembic-smoke.db"
    engine = create_engine(f"sqlite+aiosqlite:///{db_file}")

    try:
        await init_db(engine)
        async with engine.begin() as conn:
            tables = await conn.run_sync(_list_tables)
            indexes = await conn.run_sync(_list_indexes)
    finally:
        await engine.dispose()

    assert EXPECTED_TABLES.issubset(set(tables))
    assert {
        "idx_sessions_video_id",
        "idx_sessions_updated_at",
        "idx_recordings_session_id",
        "idx_exports_session_id",
    }.issubset(indexes)


@pytest.mark.asyncio
async def test_init_db_can_run_multiple_times(tmp_path: Path) -> None:
    """Applying migrations repeatedly should be safe for occupied databases."""

    db_file = tmp_path / "alembic-idempotent.db"
    engine = create_engine(f"sqlite+aiosqlite:///{db_file}")

    try:
        await init_db(engine)
        await init_db(engine)

        async with engine.begin() as conn:
            tables = await conn.run_sync(_list_tables)
    finally:
        await engine.dispose()

    assert EXPECTED_TABLES.issubset(set(tables))
