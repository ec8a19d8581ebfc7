"""Classified errors raised by the storage and runtime layers.

Every error raised to callers derives from :class:`MimicError` and carries a
stable ``code`` so the routing layer can map it to a transport status without
inspecting messages.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class MimicError(Exception):
    """Base class for all classified errors raised by the core."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context)

    def __str__(self) -> str:
        return self.message


class NotFoundError(MimicError, KeyError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"


class VideoNotFoundError(NotFoundError):
    """Raised when a session references an unknown video."""

    code = "VIDEO_NOT_FOUND"

    def __init__(self, video_id: str) -> None:
        super().__init__(f"Video {video_id} not found", video_id=video_id)


class SessionNotFoundError(NotFoundError):
    """Raised when attempting to access a session that does not exist."""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found", session_id=session_id)


class RecordingNotFoundError(NotFoundError):
    """Raised when a recording chunk is not part of the given session."""

    code = "RECORDING_NOT_FOUND"

    def __init__(self, session_id: str, chunk_id: str) -> None:
        super().__init__(
            f"Recording {chunk_id} not found in session {session_id}",
            session_id=session_id,
            chunk_id=chunk_id,
        )


class ExportNotFoundError(NotFoundError):
    """Raised when an export record does not exist."""

    code = "EXPORT_NOT_FOUND"

    def __init__(self, export_id: str) -> None:
        super().__init__(f"Export {export_id} not found", export_id=export_id)


class InvalidInputError(MimicError, ValueError):
    """Raised for malformed arguments."""

    code = "INVALID_INPUT"


class InvalidTransitionError(InvalidInputError):
    """Raised when a status write is not allowed by the transition table."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Session {session_id} cannot move from {current!r} to {requested!r}",
            session_id=session_id,
            current=current,
            requested=requested,
        )


class NoRecordingsError(MimicError):
    """Raised when exporting a session that has no recordings."""

    code = "NO_RECORDINGS"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"No recordings found for session {session_id}", session_id=session_id
        )


class ConflictError(MimicError, RuntimeError):
    """Raised when an operation collides with one already in progress."""

    code = "CONFLICT"


class ExportInProgressError(ConflictError):
    """Raised when a second export is requested for a session mid-export."""

    code = "EXPORT_IN_PROGRESS"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"An export is already running for session {session_id}",
            session_id=session_id,
        )


class OperationError(MimicError, RuntimeError):
    """Raised when a session or recording operation fails unexpectedly."""

    code = "OPERATION_ERROR"


class StorageError(OperationError):
    """Raised when the persistent store or the filesystem fails."""

    code = "STORAGE_ERROR"


class ExportError(MimicError, RuntimeError):
    """Raised when producing an export fails."""

    code = "EXPORT_ERROR"


class EncodeError(ExportError):
    """Raised when the encoder reports a failure."""

    code = "ENCODE_ERROR"


class EncodeTimeoutError(EncodeError):
    """Raised when the encoder does not finish within its time budget."""

    code = "ENCODE_TIMEOUT"


class ExportCancelledError(EncodeError):
    """Raised when an in-flight export is cancelled on request."""

    code = "EXPORT_CANCELLED"


@asynccontextmanager
async def operation_guard(
    log: logging.Logger,
    operation: str,
    *,
    wrap: type[MimicError] = OperationError,
    **context: object,
) -> AsyncIterator[None]:
    """Log failures of ``operation`` and classify anything unexpected as ``wrap``."""

    try:
        yield
    except MimicError as exc:
        log.info("%s rejected (%s): %s %s", operation, exc.code, exc, context)
        raise
    except Exception as exc:
        log.exception("%s failed %s", operation, context)
        raise wrap(f"Failed to {operation.replace('_', ' ')}", operation=operation, **context) from exc
