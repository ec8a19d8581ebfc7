"""Durable entity store facade and filesystem helpers."""

from .persistent_store import (
    ChunkCreate,
    ExportCreate,
    PersistentStore,
    SessionCreate,
    VideoCreate,
)

__all__ = [
    "ChunkCreate",
    "ExportCreate",
    "PersistentStore",
    "SessionCreate",
    "VideoCreate",
]
