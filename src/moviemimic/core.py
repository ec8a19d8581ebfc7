"""Composition root wiring the store, locks and services together."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import Settings
from .media import Encoder, FFmpegEncoder
from .runtime import ChunkSequencer, ExportOrchestrator, SessionLocks, SessionService
from .runtime.sessions import Clock, utcnow
from .storage import PersistentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MovieMimicCore:
    """Services sharing one store and one per-session lock map.

    Use :meth:`open` (``async with await MovieMimicCore.open(...)``) so the
    database is migrated and media directories exist before first use.
    """

    settings: Settings
    store: PersistentStore
    locks: SessionLocks
    sessions: SessionService
    chunks: ChunkSequencer
    exports: ExportOrchestrator

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        encoder: Encoder | None = None,
        clock: Clock = utcnow,
    ) -> "MovieMimicCore":
        settings = settings or Settings.from_env()
        store = PersistentStore(db_url=settings.db_url)
        locks = SessionLocks()
        sessions = SessionService(store, locks=locks, clock=clock)
        chunks = ChunkSequencer(store, settings, locks=locks, clock=clock)
        exports = ExportOrchestrator(
            store,
            settings,
            encoder or FFmpegEncoder(settings.ffmpeg_path, timeout=settings.encode_timeout),
            sessions=sessions,
            locks=locks,
            clock=clock,
        )
        return cls(settings, store, locks, sessions, chunks, exports)

    @classmethod
    async def open(
        cls,
        settings: Settings | None = None,
        *,
        encoder: Encoder | None = None,
        clock: Clock = utcnow,
    ) -> "MovieMimicCore":
        core = cls.build(settings, encoder=encoder, clock=clock)
        await core.initialize()
        return core

    async def initialize(self) -> None:
        self.settings.ensure_directories()
        await self.store.initialize()
        logger.info(
            "Core ready (database %s, storage %s)",
            self.store.engine.url.render_as_string(hide_password=True),
            self.settings.storage_root,
        )

    async def close(self) -> None:
        """Cancel in-flight exports and release the connection pool."""

        await self.exports.shutdown()
        await self.store.close()

    async def __aenter__(self) -> "MovieMimicCore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()


__all__ = ["MovieMimicCore"]
