"""Ordering and bookkeeping for the recorded takes of a session.

Every chunk in a session carries an ``order`` and the set of orders is kept
gapless (``1..N``). All mutations hold the per-session lock from
:class:`~moviemimic.runtime.locks.SessionLocks`, so order assignment and
compaction never race with each other.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from ..config import Settings
from ..db import PracticeSession, RecordingChunk
from ..exceptions import (
    InvalidInputError,
    RecordingNotFoundError,
    SessionNotFoundError,
    StorageError,
    operation_guard,
)
from ..schemas import RecordingChunkRead
from ..storage import ChunkCreate, PersistentStore
from ..storage.files import delete_file, file_exists, file_size, move_file
from .locks import SessionLocks
from .sessions import Clock, utcnow

logger = logging.getLogger(__name__)

_EXTENSION = re.compile(r"[A-Za-z0-9]+")


@dataclass(slots=True)
class ChunkUpload:
    """A freshly uploaded take waiting to be moved into the recordings directory."""

    source_path: Path | str
    size: int | None = None
    format: str = "webm"
    audio_codec: str = "opus"
    video_codec: str = "vp9"


def _duration_ms(duration_seconds: Any) -> int:
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)):
        raise InvalidInputError("Duration must be a number of seconds", duration=duration_seconds)
    if not math.isfinite(duration_seconds) or duration_seconds < 0:
        raise InvalidInputError("Duration must be a non-negative number", duration=duration_seconds)
    return int(round(duration_seconds * 1000))


def _to_read(chunk: RecordingChunk) -> RecordingChunkRead:
    return RecordingChunkRead.model_validate(chunk)


class ChunkSequencer:
    """Append, reorder and remove recording chunks while keeping orders gapless."""

    def __init__(
        self,
        store: PersistentStore,
        settings: Settings,
        *,
        locks: SessionLocks | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._locks = locks if locks is not None else SessionLocks()
        self._clock = clock

    async def append(
        self, session_id: str, upload: ChunkUpload, duration_seconds: float
    ) -> RecordingChunkRead:
        """Store ``upload`` as the next chunk of the session."""

        duration = _duration_ms(duration_seconds)
        if not isinstance(upload.format, str) or not _EXTENSION.fullmatch(upload.format):
            raise InvalidInputError(
                "Recording format must be a plain file extension", format=upload.format
            )
        source = Path(upload.source_path)

        async with self._locks.hold(session_id):
            async with operation_guard(logger, "append_recording", session_id=session_id):
                if await self._store.get_session(session_id) is None:
                    raise SessionNotFoundError(session_id)
                if not await file_exists(source):
                    raise InvalidInputError(
                        f"Upload {source} does not exist", source=str(source)
                    )

                order = await self._store.max_chunk_order(session_id) + 1
                size = upload.size if upload.size is not None else await file_size(source)
                destination = (
                    self._settings.recordings_dir
                    / f"recording_{session_id}_{order}_{uuid4().hex[:8]}.{upload.format}"
                )
                try:
                    await move_file(source, destination)
                except OSError as exc:
                    raise StorageError(
                        f"Could not store recording for session {session_id}",
                        session_id=session_id,
                    ) from exc

                try:
                    chunk = await self._store.create_chunk(
                        ChunkCreate(
                            session_id=session_id,
                            duration=duration,
                            order=order,
                            filepath=str(destination),
                            created_at=self._clock(),
                            metadata={
                                "size": size,
                                "format": upload.format,
                                "audioCodec": upload.audio_codec,
                                "videoCodec": upload.video_codec,
                            },
                        )
                    )
                except Exception:
                    await delete_file(destination)
                    raise

                await self.recompute_aggregate(session_id)

        logger.info("Recording %s stored at position %d of session %s", chunk.id, order, session_id)
        return _to_read(chunk)

    async def list(self, session_id: str) -> List[RecordingChunkRead]:
        """Return the session's chunks in ascending order."""

        async with operation_guard(logger, "list_recordings", session_id=session_id):
            chunks = await self._store.list_chunks(session_id)
        return [_to_read(chunk) for chunk in chunks]

    async def get(self, session_id: str, chunk_id: str) -> RecordingChunkRead:
        async with operation_guard(
            logger, "get_recording", session_id=session_id, chunk_id=chunk_id
        ):
            chunk = await self._store.get_chunk(session_id, chunk_id)
            if chunk is None:
                raise RecordingNotFoundError(session_id, chunk_id)
        return _to_read(chunk)

    async def delete(self, session_id: str, chunk_id: str) -> None:
        """Remove one chunk and close the gap it leaves in the ordering."""

        async with self._locks.hold(session_id):
            async with operation_guard(
                logger, "delete_recording", session_id=session_id, chunk_id=chunk_id
            ):
                chunk = await self._store.get_chunk(session_id, chunk_id)
                if chunk is None:
                    raise RecordingNotFoundError(session_id, chunk_id)

                await delete_file(chunk.filepath)
                await self._store.delete_chunk(session_id, chunk_id)
                await self._compact(session_id)
                await self.recompute_aggregate(session_id)
        logger.info("Recording %s removed from session %s", chunk_id, session_id)

    async def set_order(
        self, session_id: str, ordered_ids: Sequence[str]
    ) -> List[RecordingChunkRead]:
        """Place ``ordered_ids`` first, in sequence, followed by the unlisted chunks.

        Everything is validated before the first write, and the new positions
        are written in one transaction.
        """

        if not isinstance(ordered_ids, (list, tuple)):
            raise InvalidInputError("Recording order must be a list of ids")
        if not all(isinstance(chunk_id, str) for chunk_id in ordered_ids):
            raise InvalidInputError("Recording ids must be strings")
        if len(set(ordered_ids)) != len(ordered_ids):
            raise InvalidInputError("Recording order contains duplicate ids")

        async with self._locks.hold(session_id):
            async with operation_guard(logger, "set_recording_order", session_id=session_id):
                if await self._store.get_session(session_id) is None:
                    raise SessionNotFoundError(session_id)

                chunks = await self._store.list_chunks(session_id)
                by_id = {chunk.id: chunk for chunk in chunks}
                for chunk_id in ordered_ids:
                    if chunk_id not in by_id:
                        raise RecordingNotFoundError(session_id, chunk_id)

                listed = set(ordered_ids)
                sequence = [by_id[chunk_id] for chunk_id in ordered_ids] + [
                    chunk for chunk in chunks if chunk.id not in listed
                ]
                await self._write_positions(session_id, sequence)
                chunks = await self._store.list_chunks(session_id)

        logger.info("Recording order updated for session %s (%d listed)", session_id, len(ordered_ids))
        return [_to_read(chunk) for chunk in chunks]

    async def delete_all(self, session_id: str) -> int:
        """Remove every chunk of the session and return how many were removed."""

        async with self._locks.hold(session_id):
            async with operation_guard(logger, "delete_all_recordings", session_id=session_id):
                if await self._store.get_session(session_id) is None:
                    raise SessionNotFoundError(session_id)

                chunks = await self._store.list_chunks(session_id)
                for chunk in chunks:
                    await delete_file(chunk.filepath)
                removed = await self._store.delete_chunks(session_id)
                await self.recompute_aggregate(session_id)

        logger.info("Removed %d recordings from session %s", removed, session_id)
        return removed

    async def recompute_aggregate(self, session_id: str) -> None:
        """Refresh the derived totals of the session from its current chunks.

        Callers hold the session lock. ``notes`` is preserved.
        """

        total, count = await self._store.chunk_totals(session_id)
        average = total / count if count else 0.0
        now = self._clock()

        def apply(record: PracticeSession) -> None:
            record.total_duration = total
            meta = dict(record.meta or {})
            meta.update(totalChunks=count, averageChunkDuration=average)
            meta.setdefault("notes", "")
            record.meta = meta
            record.updated_at = now

        if await self._store.update_session(session_id, mutate=apply) is None:
            raise SessionNotFoundError(session_id)
        logger.debug("Session %s aggregate: %d chunks, %d ms", session_id, count, total)

    async def _compact(self, session_id: str) -> None:
        await self._write_positions(session_id, await self._store.list_chunks(session_id))

    async def _write_positions(
        self, session_id: str, sequence: Sequence[RecordingChunk]
    ) -> None:
        changes: Dict[str, int] = {
            chunk.id: position
            for position, chunk in enumerate(sequence, start=1)
            if chunk.order != position
        }
        if changes:
            await self._store.set_chunk_orders(session_id, changes)


__all__ = ["ChunkSequencer", "ChunkUpload"]
