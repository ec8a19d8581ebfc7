"""Orchestration of rendered exports built from a session's recordings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from ..config import Settings
from ..db import Export
from ..exceptions import (
    ExportCancelledError,
    ExportError,
    ExportInProgressError,
    ExportNotFoundError,
    InvalidInputError,
    MimicError,
    NoRecordingsError,
    SessionNotFoundError,
    VideoNotFoundError,
    operation_guard,
)
from ..media import EncodeOptions, Encoder, FFmpegEncoder
from ..schemas import (
    ExportRead,
    ExportSettings,
    ExportStatus,
    ExportType,
    SessionRead,
    SessionStatus,
)
from ..storage import ExportCreate, PersistentStore
from ..storage.files import delete_file, file_exists, file_size
from .locks import SessionLocks
from .sessions import Clock, SessionService, session_to_read, utcnow

logger = logging.getLogger(__name__)


def _to_read(export: Export) -> ExportRead:
    return ExportRead.model_validate(export)


class ExportOrchestrator:
    """Plan, encode, record and, on failure, roll back session exports.

    A session exports at most once at a time. The encoder runs as a tracked
    task so an in-flight export can be cancelled.
    """

    def __init__(
        self,
        store: PersistentStore,
        settings: Settings,
        encoder: Encoder | None = None,
        *,
        sessions: SessionService | None = None,
        locks: SessionLocks | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        if encoder is None:
            encoder = FFmpegEncoder(settings.ffmpeg_path, timeout=settings.encode_timeout)
        self._encoder: Encoder = encoder
        if locks is None:
            locks = sessions.locks if sessions is not None else SessionLocks()
        self._locks = locks
        if sessions is None:
            sessions = SessionService(store, locks=locks, clock=clock)
        self._sessions = sessions
        self._clock = clock
        self._in_flight: set[str] = set()
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._cancel_requested: set[str] = set()
        self._lock = asyncio.Lock()

    async def export_session(
        self, session_id: str, settings: Mapping[str, Any] | ExportSettings
    ) -> ExportRead:
        """Render the session's recordings and record the resulting export.

        After this returns or raises, the session is never left ``exporting``.
        """

        options = self._parse_settings(settings)

        async with self._lock:
            if session_id in self._in_flight:
                raise ExportInProgressError(session_id)
            self._in_flight.add(session_id)

        try:
            async with self._locks.hold(session_id):
                async with operation_guard(
                    logger, "export_session", wrap=ExportError, session_id=session_id
                ):
                    export = await self._export_locked(session_id, options)
        finally:
            async with self._lock:
                self._in_flight.discard(session_id)

        logger.info(
            "Session %s exported as %s (%d bytes)", session_id, export.filepath, export.filesize
        )
        return _to_read(export)

    async def _export_locked(self, session_id: str, options: ExportSettings) -> Export:
        record = await self._store.get_session(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        if record.status == SessionStatus.EXPORTING.value:
            raise ExportInProgressError(session_id)
        chunks = await self._store.list_chunks(session_id)
        if not chunks:
            raise NoRecordingsError(session_id)

        await self._sessions.set_export_status(session_id, SessionStatus.EXPORTING.value)

        output: Path | None = None
        export: Export | None = None
        try:
            inputs = [chunk.filepath for chunk in chunks]
            if options.type is ExportType.COMPARISON:
                video = await self._store.get_video(record.video_id)
                if video is None:
                    raise VideoNotFoundError(record.video_id)
                inputs = [video.filepath, *inputs]

            output = await self._reserve_output(session_id, options)
            await self._run_encoder(
                session_id,
                inputs,
                output,
                EncodeOptions(
                    format=options.format.value,
                    fps=options.fps,
                    quality=options.quality.value,
                ),
            )

            now = self._clock()
            export = await self._store.create_export(
                ExportCreate(
                    session_id=session_id,
                    type=options.type.value,
                    format=options.format.value,
                    quality=options.quality.value,
                    fps=options.fps,
                    filepath=str(output),
                    filesize=await file_size(output),
                    created_at=now,
                )
            )
            await self._sessions.set_export_status(
                session_id, SessionStatus.EXPORTED.value, exported_at=now
            )
            return export
        except BaseException:
            await self._rollback(session_id, output, export)
            raise

    async def _run_encoder(
        self,
        session_id: str,
        inputs: List[str],
        output: Path,
        options: EncodeOptions,
    ) -> None:
        task = asyncio.create_task(
            self._encoder.encode(inputs, str(output), options),
            name=f"export-session-{session_id}",
        )
        async with self._lock:
            self._tasks[session_id] = task
        try:
            await task
        except asyncio.CancelledError as exc:
            if session_id in self._cancel_requested:
                raise ExportCancelledError(
                    f"Export of session {session_id} was cancelled", session_id=session_id
                ) from exc
            raise
        finally:
            async with self._lock:
                self._tasks.pop(session_id, None)
                self._cancel_requested.discard(session_id)

    async def _reserve_output(self, session_id: str, options: ExportSettings) -> Path:
        exports_dir = self._settings.exports_dir
        await asyncio.to_thread(exports_dir.mkdir, parents=True, exist_ok=True)
        millis = int(self._clock().timestamp() * 1000)
        while True:
            candidate = exports_dir / (
                f"export_{session_id}_{options.type.value}_{millis}.{options.format.value}"
            )
            if not await file_exists(candidate):
                return candidate
            millis += 1

    async def _rollback(
        self, session_id: str, output: Path | None, export: Export | None
    ) -> None:
        if export is not None:
            try:
                await self._store.delete_export(export.id)
            except MimicError:
                logger.exception("Could not remove export row %s during rollback", export.id)
        if output is not None:
            await delete_file(output)
        try:
            await self._sessions.reset_after_export(session_id)
        except MimicError:
            logger.exception(
                "Could not return session %s to active after a failed export", session_id
            )
            return
        logger.warning("Export of session %s failed; session returned to active", session_id)

    async def recover_session(self, session_id: str) -> SessionRead:
        """Return a session left ``exporting`` by an interrupted process to ``active``.

        Sessions in any other state are returned unchanged.
        """

        async with self._locks.hold(session_id):
            async with operation_guard(
                logger, "recover_session", wrap=ExportError, session_id=session_id
            ):
                record = await self._store.get_session(session_id)
                if record is None:
                    raise SessionNotFoundError(session_id)
                if record.status != SessionStatus.EXPORTING.value:
                    return session_to_read(record)
                recovered = await self._sessions.reset_after_export(session_id)
        logger.warning("Session %s recovered from an interrupted export", session_id)
        return recovered

    async def cancel_export(self, session_id: str) -> bool:
        """Cancel the running encode of ``session_id``; ``False`` when none is running."""

        async with self._lock:
            task = self._tasks.get(session_id)
            if task is None or task.done():
                return False
            self._cancel_requested.add(session_id)
            task.cancel()
        logger.info("Cancellation requested for export of session %s", session_id)
        return True

    async def shutdown(self) -> None:
        """Cancel every in-flight encode and wait for the tasks to settle."""

        async with self._lock:
            tasks = list(self._tasks.items())
            for session_id, task in tasks:
                self._cancel_requested.add(session_id)
                task.cancel()

        for session_id, task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                logger.info("Export task for session %s cancelled", session_id)
            except Exception:
                logger.exception("Export task for session %s terminated with an error", session_id)

    async def list_exports(self, session_id: str) -> List[ExportRead]:
        """Return the session's exports, newest first."""

        async with operation_guard(
            logger, "list_exports", wrap=ExportError, session_id=session_id
        ):
            exports = await self._store.list_exports(session_id)
        return [_to_read(export) for export in exports]

    async def get_export(self, export_id: str) -> ExportRead:
        async with operation_guard(logger, "get_export", wrap=ExportError, export_id=export_id):
            export = await self._store.get_export(export_id)
            if export is None:
                raise ExportNotFoundError(export_id)
        return _to_read(export)

    async def mark_downloaded(self, export_id: str) -> ExportRead:
        """Stamp ``downloaded_at``; repeated calls overwrite the timestamp."""

        async with operation_guard(
            logger, "mark_export_downloaded", wrap=ExportError, export_id=export_id
        ):
            export = await self._store.update_export(
                export_id, {"downloaded_at": self._clock()}
            )
            if export is None:
                raise ExportNotFoundError(export_id)
        return _to_read(export)

    async def delete_export(self, export_id: str) -> None:
        async with operation_guard(logger, "delete_export", wrap=ExportError, export_id=export_id):
            export = await self._store.get_export(export_id)
            if export is None:
                raise ExportNotFoundError(export_id)
            await delete_file(export.filepath)
            await self._store.delete_export(export_id)
        logger.info("Export %s deleted", export_id)

    async def get_export_status(self, export_id: str) -> ExportStatus:
        """Exports are recorded only once rendered, so an existing row is complete."""

        export = await self.get_export(export_id)
        return ExportStatus(export_id=export.id, status="completed", progress=100)

    @staticmethod
    def _parse_settings(settings: Mapping[str, Any] | ExportSettings) -> ExportSettings:
        if isinstance(settings, ExportSettings):
            return settings
        if not isinstance(settings, Mapping):
            raise InvalidInputError("Export settings must be a mapping")
        try:
            return ExportSettings.model_validate(dict(settings))
        except ValidationError as exc:
            raise InvalidInputError(
                "Invalid export settings", errors=exc.errors(include_url=False)
            ) from exc


__all__ = ["ExportOrchestrator"]
