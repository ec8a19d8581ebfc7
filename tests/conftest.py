"""Shared pytest fixtures for the core services."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import pytest
import pytest_asyncio

from moviemimic.config import Settings
from moviemimic.core import MovieMimicCore
from moviemimic.media import EncodeOptions
from moviemimic.runtime import ChunkUpload
from moviemimic.storage import VideoCreate


class TickingClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class FakeEncoder:
    """Encoder stand-in recording its calls and writing a small output file."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], str, EncodeOptions]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def encode(
        self, inputs: Sequence[str], output: str, options: EncodeOptions
    ) -> None:
        self.calls.append((list(inputs), output, options))
        Path(output).write_bytes(b"partial")
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        Path(output).write_bytes(b"rendered:" + "|".join(inputs).encode())


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        storage_root=tmp_path / "media",
        encode_timeout=None,
    )


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest_asyncio.fixture()
async def core(settings: Settings, encoder: FakeEncoder, clock: TickingClock):
    """Provide migrated services sharing one store, backed by ``tmp_path``."""

    instance = await MovieMimicCore.open(settings, encoder=encoder, clock=clock)
    try:
        yield instance
    finally:
        await instance.close()


@pytest_asyncio.fixture()
async def video(core: MovieMimicCore, tmp_path: Path):
    """Register a reference video whose file exists on disk."""

    path = tmp_path / "reference.mp4"
    path.write_bytes(b"reference-video")
    return await core.store.create_video(
        VideoCreate(
            filename="reference.mp4",
            original_name="Casablanca.mp4",
            format="mp4",
            filepath=str(path),
            duration=120_000,
            resolution="1920x1080",
            thumbnail_path=str(tmp_path / "thumb.jpg"),
        )
    )


@pytest.fixture()
def make_upload(tmp_path: Path):
    """Return a factory writing a temporary upload file."""

    counter = {"value": 0}

    def _make(payload: bytes = b"take") -> ChunkUpload:
        counter["value"] += 1
        incoming = tmp_path / "incoming"
        incoming.mkdir(exist_ok=True)
        path = incoming / f"upload-{counter['value']}.webm"
        path.write_bytes(payload)
        return ChunkUpload(source_path=path)

    return _make
