from __future__ import annotations

from pathlib import Path

import pytest

from moviemimic.config import DEFAULT_ENCODE_TIMEOUT_SEC, Settings
from moviemimic.db.session import DEFAULT_DB_URL


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MOVIEMIMIC_DB_URL",
        "MOVIEMIMIC_STORAGE_ROOT",
        "MOVIEMIMIC_FFMPEG_PATH",
        "MOVIEMIMIC_ENCODE_TIMEOUT_SEC",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_url == DEFAULT_DB_URL
    assert settings.storage_root == Path("uploads").resolve()
    assert settings.ffmpeg_path is None
    assert settings.encode_timeout == DEFAULT_ENCODE_TIMEOUT_SEC
    assert settings.recordings_dir == settings.storage_root / "recordings"
    assert settings.exports_dir == settings.storage_root / "exports"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MOVIEMIMIC_DB_URL", "sqlite+aiosqlite:///custom.db")
    monkeypatch.setenv("MOVIEMIMIC_STORAGE_ROOT", str(tmp_path / "media"))
    monkeypatch.setenv("MOVIEMIMIC_FFMPEG_PATH", "/opt/ffmpeg/bin/ffmpeg")
    monkeypatch.setenv("MOVIEMIMIC_ENCODE_TIMEOUT_SEC", "90")

    settings = Settings.from_env()

    assert settings.db_url == "sqlite+aiosqlite:///custom.db"
    assert settings.storage_root == tmp_path / "media"
    assert settings.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
    assert settings.encode_timeout == pytest.approx(90.0)


def test_explicit_arguments_win(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MOVIEMIMIC_STORAGE_ROOT", str(tmp_path / "ignored"))
    monkeypatch.setenv("MOVIEMIMIC_ENCODE_TIMEOUT_SEC", "90")

    settings = Settings.from_env(storage_root=tmp_path / "explicit", encode_timeout=5.0)

    assert settings.storage_root == tmp_path / "explicit"
    assert settings.encode_timeout == pytest.approx(5.0)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("0", None), ("-3", None), ("soon", DEFAULT_ENCODE_TIMEOUT_SEC), ("", DEFAULT_ENCODE_TIMEOUT_SEC)],
)
def test_timeout_parsing(monkeypatch: pytest.MonkeyPatch, raw: str, expected) -> None:
    monkeypatch.setenv("MOVIEMIMIC_ENCODE_TIMEOUT_SEC", raw)

    assert Settings.from_env().encode_timeout == expected


def test_ensure_directories(tmp_path: Path) -> None:
    settings = Settings(db_url=DEFAULT_DB_URL, storage_root=tmp_path / "root")

    settings.ensure_directories()

    assert settings.recordings_dir.is_dir()
    assert settings.exports_dir.is_dir()
