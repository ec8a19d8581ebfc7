"""Filesystem helpers used when recordings and exports are created or removed.

Blocking calls run in worker threads so they never stall the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


async def file_exists(path: str | Path) -> bool:
    """Return ``True`` when ``path`` points at an existing file."""

    return await asyncio.to_thread(Path(path).is_file)


async def file_size(path: str | Path) -> int:
    """Return the size of ``path`` in bytes.

    Raises :class:`OSError` when the file cannot be inspected.
    """

    stat = await asyncio.to_thread(Path(path).stat)
    return int(stat.st_size)


async def move_file(source: str | Path, destination: str | Path) -> Path:
    """Move ``source`` to ``destination``, creating parent directories."""

    target = Path(destination)

    def _move() -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))

    await asyncio.to_thread(_move)
    logger.debug("Moved %s to %s", source, target)
    return target


async def delete_file(path: str | Path) -> bool:
    """Remove ``path`` if it exists; never raises.

    Returns ``True`` when the file is gone afterwards (removed now or already
    absent) and ``False`` when removal failed.
    """

    try:
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to delete file %s: %s", path, exc)
        return False
    logger.debug("Deleted file %s", path)
    return True


__all__ = ["delete_file", "file_exists", "file_size", "move_file"]
