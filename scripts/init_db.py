"""Command-line helper to run pending Alembic migrations."""

import asyncio
import logging
from pathlib import Path

from moviemimic.config import Settings
from moviemimic.db import create_engine, init_db


async def main() -> None:
    """Apply migrations and create the media directories for the configured settings."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    settings.ensure_directories()

    engine = create_engine(settings.db_url)
    await init_db(engine)
    db_path = Path(engine.url.database or "movie-mimic.db")
    print(f"Initialized database at {db_path.resolve()}")
    print(f"Media stored under {settings.storage_root}")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
