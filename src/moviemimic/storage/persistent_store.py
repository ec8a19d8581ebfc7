"""High-level API for interacting with the durable entity store."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..db import Export, PracticeSession, RecordingChunk, Video, create_engine, get_sessionmaker
from ..db.session import init_db, session_scope
from ..exceptions import StorageError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VideoCreate:
    """Payload used by the ingest layer to register a reference video."""

    filename: str
    original_name: str
    format: str
    filepath: str
    duration: int = 0
    resolution: str = ""
    subtitle_path: str | None = None
    thumbnail_path: str | None = None
    uploaded_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionCreate:
    """Payload required to open a practice session."""

    video_id: str
    name: str
    description: str
    created_at: datetime
    status: str = "active"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkCreate:
    """Payload required to append a recording chunk to a session."""

    session_id: str
    duration: int
    order: int
    filepath: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExportCreate:
    """Payload for persisting a finished export."""

    session_id: str
    type: str
    format: str
    quality: str
    fps: int
    filepath: str
    filesize: int
    created_at: datetime


class PersistentStore:
    """Facade responsible for durable entity persistence.

    Every method runs as a single unit of work; callers needing exclusivity
    across several calls must serialise them themselves. SQLAlchemy failures
    surface as :class:`StorageError`.
    """

    def __init__(
        self, *, engine: AsyncEngine | None = None, db_url: str | None = None
    ) -> None:
        if engine is None:
            self.engine = create_engine(db_url)
        else:
            self.engine = engine
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            self._sessionmaker = get_sessionmaker(self.engine)
        return self._sessionmaker

    async def initialize(self) -> None:
        """Apply database migrations on first launch."""

        await init_db(self.engine)

    async def close(self) -> None:
        """Dispose of the underlying connection pool."""

        await self.engine.dispose()

    async def __aenter__(self) -> "PersistentStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()

    @asynccontextmanager
    async def _scope(self, action: str) -> AsyncIterator[AsyncSession]:
        """Transactional scope translating driver errors into :class:`StorageError`."""

        try:
            async with session_scope(self.sessionmaker) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Persistent store action %s failed: %s", action, exc)
            raise StorageError(f"Storage operation {action} failed", action=action) from exc

    # -- videos -----------------------------------------------------------

    async def create_video(self, payload: VideoCreate) -> Video:
        """Persist a new :class:`Video`."""

        async with self._scope("create_video") as session:
            video = Video(
                filename=payload.filename,
                original_name=payload.original_name,
                format=payload.format,
                duration=payload.duration,
                resolution=payload.resolution,
                filepath=payload.filepath,
                subtitle_path=payload.subtitle_path,
                thumbnail_path=payload.thumbnail_path,
                meta=dict(payload.metadata),
            )
            if payload.uploaded_at is not None:
                video.uploaded_at = payload.uploaded_at
            session.add(video)
            await session.flush()
            await session.refresh(video)
            return video

    async def get_video(self, video_id: str) -> Video | None:
        async with self._scope("get_video") as session:
            return await session.get(Video, video_id)

    # -- sessions ---------------------------------------------------------

    async def create_session(self, payload: SessionCreate) -> PracticeSession:
        """Persist a new :class:`PracticeSession`."""

        async with self._scope("create_session") as session:
            record = PracticeSession(
                video_id=payload.video_id,
                name=payload.name,
                description=payload.description,
                created_at=payload.created_at,
                updated_at=payload.created_at,
                total_duration=0,
                status=payload.status,
                exported_at=None,
                meta=dict(payload.metadata),
            )
            session.add(record)
            await session.flush()
            await session.refresh(record)
            return record

    async def get_session(self, session_id: str) -> PracticeSession | None:
        async with self._scope("get_session") as session:
            return await session.get(PracticeSession, session_id)

    async def list_sessions(
        self,
        *,
        video_id: str | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[PracticeSession], int]:
        """Return a page of sessions, most recently updated first, and the total."""

        conditions = []
        if video_id is not None:
            conditions.append(PracticeSession.video_id == video_id)
        if status is not None:
            conditions.append(PracticeSession.status == status)

        async with self._scope("list_sessions") as session:
            result = await session.execute(
                select(PracticeSession)
                .where(*conditions)
                .order_by(PracticeSession.updated_at.desc(), PracticeSession.id)
                .offset(offset)
                .limit(limit)
            )
            records = list(result.scalars().all())

            total_result = await session.execute(
                select(func.count()).select_from(PracticeSession).where(*conditions)
            )
            total = int(total_result.scalar_one())
            return records, total

    async def update_session(
        self,
        session_id: str,
        values: Mapping[str, Any] | None = None,
        *,
        mutate: Callable[[PracticeSession], None] | None = None,
    ) -> PracticeSession | None:
        """Apply ``values`` to a session row; ``None`` if the row is missing.

        ``mutate`` runs against the freshly loaded row inside the same
        transaction, so read-modify-write changes (status checks, metadata
        merges) observe the committed state. Exceptions it raises roll back.
        """

        async with self._scope("update_session") as session:
            record = await session.get(PracticeSession, session_id)
            if record is None:
                return None
            for key, value in (values or {}).items():
                setattr(record, key, value)
            if mutate is not None:
                mutate(record)
            await session.flush()
            await session.refresh(record)
            return record

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session; recordings and exports follow via cascade."""

        async with self._scope("delete_session") as session:
            result = await session.execute(
                delete(PracticeSession).where(PracticeSession.id == session_id)
            )
            return bool(result.rowcount)

    # -- recordings -------------------------------------------------------

    async def create_chunk(self, payload: ChunkCreate) -> RecordingChunk:
        """Persist a new :class:`RecordingChunk`."""

        async with self._scope("create_chunk") as session:
            chunk = RecordingChunk(
                session_id=payload.session_id,
                duration=payload.duration,
                order=payload.order,
                filepath=payload.filepath,
                created_at=payload.created_at,
                meta=dict(payload.metadata),
            )
            session.add(chunk)
            await session.flush()
            await session.refresh(chunk)
            return chunk

    async def get_chunk(self, session_id: str, chunk_id: str) -> RecordingChunk | None:
        async with self._scope("get_chunk") as session:
            result = await session.execute(
                select(RecordingChunk).where(
                    RecordingChunk.session_id == session_id,
                    RecordingChunk.id == chunk_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_chunks(self, session_id: str) -> list[RecordingChunk]:
        """Return the session's chunks in ascending order."""

        async with self._scope("list_chunks") as session:
            result = await session.execute(
                select(RecordingChunk)
                .where(RecordingChunk.session_id == session_id)
                .order_by(RecordingChunk.order.asc(), RecordingChunk.created_at.asc())
            )
            return list(result.scalars().all())

    async def max_chunk_order(self, session_id: str) -> int:
        """Return the highest ``order`` in the session, ``0`` when empty."""

        async with self._scope("max_chunk_order") as session:
            result = await session.execute(
                select(func.coalesce(func.max(RecordingChunk.order), 0)).where(
                    RecordingChunk.session_id == session_id
                )
            )
            return int(result.scalar_one())

    async def set_chunk_orders(self, session_id: str, orders: Mapping[str, int]) -> None:
        """Write ``orders`` (chunk id -> position) in a single unit of work."""

        async with self._scope("set_chunk_orders") as session:
            for chunk_id, position in orders.items():
                await session.execute(
                    update(RecordingChunk)
                    .where(
                        RecordingChunk.session_id == session_id,
                        RecordingChunk.id == chunk_id,
                    )
                    .values({RecordingChunk.order: position})
                )

    async def delete_chunk(self, session_id: str, chunk_id: str) -> bool:
        async with self._scope("delete_chunk") as session:
            result = await session.execute(
                delete(RecordingChunk).where(
                    RecordingChunk.session_id == session_id,
                    RecordingChunk.id == chunk_id,
                )
            )
            return bool(result.rowcount)

    async def delete_chunks(self, session_id: str) -> int:
        """Delete every chunk of a session and return how many rows went away."""

        async with self._scope("delete_chunks") as session:
            result = await session.execute(
                delete(RecordingChunk).where(RecordingChunk.session_id == session_id)
            )
            return int(result.rowcount or 0)

    async def chunk_totals(self, session_id: str) -> tuple[int, int]:
        """Return ``(sum of durations, chunk count)`` for a session."""

        async with self._scope("chunk_totals") as session:
            result = await session.execute(
                select(
                    func.coalesce(func.sum(RecordingChunk.duration), 0),
                    func.count(RecordingChunk.id),
                ).where(RecordingChunk.session_id == session_id)
            )
            total, count = result.one()
            return int(total), int(count)

    # -- exports ----------------------------------------------------------

    async def create_export(self, payload: ExportCreate) -> Export:
        """Persist a finished :class:`Export`."""

        async with self._scope("create_export") as session:
            record = Export(
                session_id=payload.session_id,
                type=payload.type,
                format=payload.format,
                quality=payload.quality,
                fps=payload.fps,
                filepath=payload.filepath,
                filesize=payload.filesize,
                created_at=payload.created_at,
                downloaded_at=None,
            )
            session.add(record)
            await session.flush()
            await session.refresh(record)
            return record

    async def get_export(self, export_id: str) -> Export | None:
        async with self._scope("get_export") as session:
            return await session.get(Export, export_id)

    async def list_exports(self, session_id: str) -> list[Export]:
        """Return a session's exports, newest first."""

        async with self._scope("list_exports") as session:
            result = await session.execute(
                select(Export)
                .where(Export.session_id == session_id)
                .order_by(Export.created_at.desc())
            )
            return list(result.scalars().all())

    async def update_export(
        self, export_id: str, values: Mapping[str, Any]
    ) -> Export | None:
        async with self._scope("update_export") as session:
            record = await session.get(Export, export_id)
            if record is None:
                return None
            for key, value in values.items():
                setattr(record, key, value)
            await session.flush()
            await session.refresh(record)
            return record

    async def delete_export(self, export_id: str) -> bool:
        async with self._scope("delete_export") as session:
            result = await session.execute(delete(Export).where(Export.id == export_id))
            return bool(result.rowcount)
