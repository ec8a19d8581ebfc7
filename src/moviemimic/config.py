"""Runtime configuration resolved from explicit arguments and the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .db.session import DEFAULT_DB_URL

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_ROOT = Path("uploads")
DEFAULT_ENCODE_TIMEOUT_SEC = 1800.0


def resolve_storage_root(explicit: Path | None = None) -> Path:
    """Return the absolute storage root honoring environment overrides."""

    env_root = os.environ.get("MOVIEMIMIC_STORAGE_ROOT")
    if explicit is not None:
        root_path = explicit
    elif env_root:
        root_path = Path(env_root).expanduser()
    else:
        root_path = DEFAULT_STORAGE_ROOT
    return root_path if root_path.is_absolute() else root_path.resolve()


def _parse_timeout(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return DEFAULT_ENCODE_TIMEOUT_SEC
    try:
        value = float(raw)
    except ValueError:
        logger.warning(
            "Ignoring invalid MOVIEMIMIC_ENCODE_TIMEOUT_SEC=%r; using %s seconds",
            raw,
            DEFAULT_ENCODE_TIMEOUT_SEC,
        )
        return DEFAULT_ENCODE_TIMEOUT_SEC
    return value if value > 0 else None


@dataclass(frozen=True, slots=True)
class Settings:
    """Paths and limits shared by the services."""

    db_url: str
    storage_root: Path
    ffmpeg_path: str | None = None
    encode_timeout: float | None = DEFAULT_ENCODE_TIMEOUT_SEC

    @property
    def recordings_dir(self) -> Path:
        """Directory holding recorded chunks."""

        return self.storage_root / "recordings"

    @property
    def exports_dir(self) -> Path:
        """Directory holding rendered exports."""

        return self.storage_root / "exports"

    def ensure_directories(self) -> None:
        """Create the media directories if they are missing."""

        for directory in (self.recordings_dir, self.exports_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(
        cls,
        *,
        db_url: str | None = None,
        storage_root: Path | None = None,
        ffmpeg_path: str | None = None,
        encode_timeout: float | None = None,
    ) -> "Settings":
        """Build settings, preferring explicit arguments over ``MOVIEMIMIC_*`` variables."""

        timeout = (
            encode_timeout
            if encode_timeout is not None
            else _parse_timeout(os.environ.get("MOVIEMIMIC_ENCODE_TIMEOUT_SEC"))
        )
        return cls(
            db_url=db_url or os.environ.get("MOVIEMIMIC_DB_URL") or DEFAULT_DB_URL,
            storage_root=resolve_storage_root(storage_root),
            ffmpeg_path=ffmpeg_path or os.environ.get("MOVIEMIMIC_FFMPEG_PATH") or None,
            encode_timeout=timeout,
        )


__all__ = ["Settings", "resolve_storage_root", "DEFAULT_ENCODE_TIMEOUT_SEC"]
