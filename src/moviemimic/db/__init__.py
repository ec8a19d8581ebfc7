"""Database setup for Movie Mimic."""

from .session import create_engine, get_sessionmaker, init_db, session_scope
from .models import Export, PracticeSession, RecordingChunk, Video

__all__ = [
    "create_engine",
    "get_sessionmaker",
    "init_db",
    "session_scope",
    "Export",
    "PracticeSession",
    "RecordingChunk",
    "Video",
]
