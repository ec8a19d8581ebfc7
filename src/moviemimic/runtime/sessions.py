"""Practice session lifecycle and the status state machine."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet

from pydantic import ValidationError

from ..db import PracticeSession, Video
from ..exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    SessionNotFoundError,
    VideoNotFoundError,
    operation_guard,
)
from ..schemas import SessionPage, SessionRead, SessionStatus, SessionUpdate, VideoSummary
from ..storage import PersistentStore, SessionCreate
from ..storage.files import delete_file
from .locks import SessionLocks

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

MAX_PAGE_SIZE = 100

SESSION_STATUS_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"completed", "archived", "exporting"}),
    "completed": frozenset({"archived", "active", "exporting"}),
    "exporting": frozenset({"exported", "failed"}),
    "exported": frozenset({"archived", "exporting"}),
    "failed": frozenset({"active"}),
    "archived": frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, requested: str) -> bool:
    """Return ``True`` when ``current -> requested`` is a legal status write."""

    if current == requested:
        return True
    return requested in SESSION_STATUS_TRANSITIONS.get(current, frozenset())


def transition(record: PracticeSession, new_status: str) -> None:
    """Move ``record`` to ``new_status`` or raise :class:`InvalidTransitionError`."""

    if not can_transition(record.status, new_status):
        raise InvalidTransitionError(record.id, record.status, new_status)
    record.status = new_status


def _check_manual_status(record: PracticeSession, new_status: str) -> None:
    # Moves into or out of ``exporting`` belong to the export orchestrator.
    exporting = SessionStatus.EXPORTING.value
    if new_status != record.status and exporting in (record.status, new_status):
        raise InvalidTransitionError(record.id, record.status, new_status)


def session_to_read(
    record: PracticeSession, video: Video | None = None
) -> SessionRead:
    """Project a session row (and optionally its video) into :class:`SessionRead`."""

    summary = None
    if video is not None:
        summary = VideoSummary(
            id=video.id,
            name=video.original_name,
            thumbnail=video.thumbnail_path,
            duration=video.duration,
        )
    return SessionRead.model_validate(
        {
            "id": record.id,
            "video_id": record.video_id,
            "name": record.name,
            "description": record.description,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "total_duration": record.total_duration,
            "status": record.status,
            "exported_at": record.exported_at,
            "meta": dict(record.meta or {}),
            "video": summary,
        }
    )


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer", **{name: value})
    return value


class SessionService:
    """CRUD over practice sessions with a centralised status state machine."""

    def __init__(
        self,
        store: PersistentStore,
        *,
        locks: SessionLocks | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._locks = locks if locks is not None else SessionLocks()
        self._clock = clock

    @property
    def locks(self) -> SessionLocks:
        return self._locks

    async def create(
        self,
        video_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> SessionRead:
        """Open a new ``active`` session against ``video_id``."""

        async with operation_guard(logger, "create_session", video_id=video_id):
            if await self._store.get_video(video_id) is None:
                raise VideoNotFoundError(video_id)

            now = self._clock()
            record = await self._store.create_session(
                SessionCreate(
                    video_id=video_id,
                    name=name or f"Session {now:%Y-%m-%d}",
                    description=description or "",
                    created_at=now,
                    metadata={"totalChunks": 0, "averageChunkDuration": 0, "notes": ""},
                )
            )
        logger.info("Session %s created for video %s", record.id, video_id)
        return session_to_read(record)

    async def get(self, session_id: str, *, include_video: bool = False) -> SessionRead:
        async with operation_guard(logger, "get_session", session_id=session_id):
            record = await self._store.get_session(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            video = None
            if include_video:
                video = await self._store.get_video(record.video_id)
            return session_to_read(record, video)

    async def update(
        self, session_id: str, changes: Mapping[str, Any] | SessionUpdate
    ) -> SessionRead:
        """Apply whitelisted changes; unknown keys are ignored.

        Only ``notes`` is writable inside ``metadata``; the chunk counters are
        derived. Status writes hold the session lock and follow
        :data:`SESSION_STATUS_TRANSITIONS`; entering or leaving ``exporting``
        is reserved for the export orchestrator.
        """

        async with operation_guard(logger, "update_session", session_id=session_id):
            update = self._parse_update(changes)
        if update.status is None:
            return await self._apply_update(session_id, update)
        async with self._locks.hold(session_id):
            return await self._apply_update(session_id, update)

    async def _apply_update(self, session_id: str, update: SessionUpdate) -> SessionRead:
        async with operation_guard(logger, "update_session", session_id=session_id):
            provided = update.model_fields_set
            notes = self._parse_notes(update.metadata) if "metadata" in provided else None
            now = self._clock()

            def apply(record: PracticeSession) -> None:
                if update.status is not None:
                    status = SessionStatus(update.status).value
                    _check_manual_status(record, status)
                    transition(record, status)
                if update.name is not None:
                    record.name = update.name
                if update.description is not None:
                    record.description = update.description
                if "exported_at" in provided:
                    record.exported_at = update.exported_at
                if notes is not None:
                    record.meta = {**(record.meta or {}), "notes": notes}
                record.updated_at = now

            record = await self._store.update_session(session_id, mutate=apply)
            if record is None:
                raise SessionNotFoundError(session_id)
        return session_to_read(record)

    async def list(
        self,
        page: int = 1,
        limit: int = 20,
        *,
        video_id: str | None = None,
        status: str | SessionStatus | None = None,
    ) -> SessionPage:
        """Return one page of sessions, most recently updated first."""

        async with operation_guard(logger, "list_sessions"):
            page = _require_int("page", page)
            limit = _require_int("limit", limit)
            if page < 1:
                raise InvalidInputError("page must be >= 1", page=page)
            if not 1 <= limit <= MAX_PAGE_SIZE:
                raise InvalidInputError(
                    f"limit must be between 1 and {MAX_PAGE_SIZE}", limit=limit
                )
            status_value = None
            if status is not None:
                try:
                    status_value = SessionStatus(status).value
                except ValueError as exc:
                    raise InvalidInputError(
                        f"Unknown session status {status!r}", status=status
                    ) from exc

            records, total = await self._store.list_sessions(
                video_id=video_id,
                status=status_value,
                limit=limit,
                offset=(page - 1) * limit,
            )
        return SessionPage(
            items=[session_to_read(record) for record in records],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    async def delete(self, session_id: str) -> None:
        """Remove a session, its recordings and exports.

        Backing files are removed best-effort before the row; the row delete
        cascades to the recording and export rows.
        """

        async with self._locks.hold(session_id):
            async with operation_guard(logger, "delete_session", session_id=session_id):
                record = await self._store.get_session(session_id)
                if record is None:
                    raise SessionNotFoundError(session_id)

                chunks = await self._store.list_chunks(session_id)
                exports = await self._store.list_exports(session_id)
                for path in [chunk.filepath for chunk in chunks] + [
                    export.filepath for export in exports
                ]:
                    await delete_file(path)

                await self._store.delete_session(session_id)
        logger.info(
            "Session %s deleted with %d recordings and %d exports",
            session_id,
            len(chunks),
            len(exports),
        )

    async def complete(self, session_id: str) -> SessionRead:
        """Mark the session as finished recording."""

        return await self.transition(session_id, SessionStatus.COMPLETED.value)

    async def archive(self, session_id: str) -> SessionRead:
        return await self.transition(session_id, SessionStatus.ARCHIVED.value)

    async def reopen(self, session_id: str) -> SessionRead:
        """Return a completed or failed session to ``active``."""

        return await self.transition(session_id, SessionStatus.ACTIVE.value)

    async def transition(
        self, session_id: str, new_status: str, **values: Any
    ) -> SessionRead:
        """Validate and persist a status change together with ``values``.

        Holds the session lock. ``exporting`` can be neither entered nor left
        here; see :meth:`set_export_status`.
        """

        async with self._locks.hold(session_id):
            return await self._write_status(
                session_id, new_status, values, check=_check_manual_status
            )

    async def set_export_status(
        self, session_id: str, new_status: str, **values: Any
    ) -> SessionRead:
        """Status write on behalf of the export orchestrator.

        The caller already holds the session lock.
        """

        return await self._write_status(session_id, new_status, values)

    async def reset_after_export(self, session_id: str) -> SessionRead:
        """Return the session to ``active`` after an export did not complete.

        An ``exporting`` session walks ``failed -> active`` in one write. Any
        other state is forced to ``active``. The caller holds the session lock.
        """

        async with operation_guard(logger, "reset_session", session_id=session_id):
            now = self._clock()

            def apply(record: PracticeSession) -> None:
                if record.status == SessionStatus.EXPORTING.value:
                    transition(record, SessionStatus.FAILED.value)
                    transition(record, SessionStatus.ACTIVE.value)
                elif record.status != SessionStatus.ACTIVE.value:
                    logger.warning(
                        "Session %s was %r after an unfinished export; forcing active",
                        session_id,
                        record.status,
                    )
                    record.status = SessionStatus.ACTIVE.value
                record.updated_at = now

            record = await self._store.update_session(session_id, mutate=apply)
            if record is None:
                raise SessionNotFoundError(session_id)
        return session_to_read(record)

    async def _write_status(
        self,
        session_id: str,
        new_status: str,
        values: Mapping[str, Any],
        *,
        check: Callable[[PracticeSession, str], None] | None = None,
    ) -> SessionRead:
        async with operation_guard(
            logger, "transition_session", session_id=session_id, status=new_status
        ):
            now = self._clock()

            def apply(record: PracticeSession) -> None:
                previous = record.status
                if check is not None:
                    check(record, new_status)
                transition(record, new_status)
                for key, value in values.items():
                    setattr(record, key, value)
                record.updated_at = now
                if previous != new_status:
                    logger.debug(
                        "Session %s status %s -> %s", session_id, previous, new_status
                    )

            record = await self._store.update_session(session_id, mutate=apply)
            if record is None:
                raise SessionNotFoundError(session_id)
        return session_to_read(record)

    @staticmethod
    def _parse_update(changes: Mapping[str, Any] | SessionUpdate) -> SessionUpdate:
        if isinstance(changes, SessionUpdate):
            return changes
        if not isinstance(changes, Mapping):
            raise InvalidInputError("Session updates must be a mapping")
        try:
            return SessionUpdate.model_validate(dict(changes))
        except ValidationError as exc:
            raise InvalidInputError(
                "Invalid session update", errors=exc.errors(include_url=False)
            ) from exc

    @staticmethod
    def _parse_notes(metadata: dict[str, Any] | None) -> str | None:
        if metadata is None or "notes" not in metadata:
            return None
        notes = metadata["notes"]
        if not isinstance(notes, str):
            raise InvalidInputError("metadata.notes must be a string")
        return notes


__all__ = [
    "SESSION_STATUS_TRANSITIONS",
    "SessionService",
    "can_transition",
    "session_to_read",
    "transition",
    "utcnow",
]
