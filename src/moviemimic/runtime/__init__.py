"""Runtime services: session lifecycle, chunk sequencing and exports."""

from .chunks import ChunkSequencer, ChunkUpload
from .exports import ExportOrchestrator
from .locks import SessionLocks
from .sessions import SESSION_STATUS_TRANSITIONS, SessionService, can_transition

__all__ = [
    "ChunkSequencer",
    "ChunkUpload",
    "ExportOrchestrator",
    "SESSION_STATUS_TRANSITIONS",
    "SessionLocks",
    "SessionService",
    "can_transition",
]
