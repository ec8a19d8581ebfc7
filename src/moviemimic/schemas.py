"""Pydantic models describing values exchanged with the routing layer."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPORTING = "exporting"
    EXPORTED = "exported"
    FAILED = "failed"
    ARCHIVED = "archived"


class ExportType(str, Enum):
    SOLO = "solo"
    COMPARISON = "comparison"


class ExportFormat(str, Enum):
    MP4 = "mp4"
    WEBM = "webm"


class ExportQuality(str, Enum):
    P480 = "480p"
    P720 = "720p"
    P1080 = "1080p"


def ensure_utc(value: Any) -> Any:
    """Attach UTC to naive datetimes; SQLite drops timezone information."""

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


class _ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class SessionMetadata(BaseModel):
    total_chunks: int = Field(default=0, alias="totalChunks")
    average_chunk_duration: float = Field(default=0.0, alias="averageChunkDuration")
    notes: str = ""

    model_config = ConfigDict(populate_by_name=True)


class VideoSummary(_ReadModel):
    """Read-only projection of a video attached to a session."""

    id: str
    name: str
    thumbnail: Optional[str] = None
    duration: int


class SessionRead(_ReadModel):
    id: str
    video_id: str
    name: str
    description: str
    created_at: datetime
    updated_at: datetime
    total_duration: int
    status: SessionStatus
    exported_at: Optional[datetime] = None
    metadata: SessionMetadata = Field(
        default_factory=SessionMetadata, validation_alias="meta"
    )
    video: Optional[VideoSummary] = None

    @field_validator("created_at", "updated_at", "exported_at", mode="before")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        return ensure_utc(value)


class SessionPage(BaseModel):
    items: list[SessionRead]
    total: int
    page: int
    limit: int
    total_pages: int


class SessionUpdate(BaseModel):
    """Whitelisted fields accepted by session updates; other keys are dropped."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: Optional[SessionStatus] = None
    exported_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")


class ChunkMetadata(BaseModel):
    size: int = 0
    format: str = "webm"
    audio_codec: str = Field(default="opus", alias="audioCodec")
    video_codec: str = Field(default="vp9", alias="videoCodec")

    model_config = ConfigDict(populate_by_name=True)


class RecordingChunkRead(_ReadModel):
    id: str
    session_id: str
    duration: int
    order: int
    filepath: str
    created_at: datetime
    metadata: ChunkMetadata = Field(
        default_factory=ChunkMetadata, validation_alias="meta"
    )

    @field_validator("created_at", mode="before")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        return ensure_utc(value)


class ExportSettings(BaseModel):
    type: ExportType
    format: ExportFormat
    quality: ExportQuality
    fps: int = Field(gt=0, le=120, strict=True)

    model_config = ConfigDict(extra="forbid")


class ExportRead(_ReadModel):
    id: str
    session_id: str
    type: ExportType
    format: ExportFormat
    quality: ExportQuality
    fps: int
    filepath: str
    filesize: int
    created_at: datetime
    downloaded_at: Optional[datetime] = None

    @field_validator("created_at", "downloaded_at", mode="before")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        return ensure_utc(value)


class ExportStatus(BaseModel):
    export_id: str
    status: Literal["pending", "processing", "completed", "failed"] = "completed"
    progress: int = Field(default=100, ge=0, le=100)


__all__ = [
    "ChunkMetadata",
    "ExportFormat",
    "ExportQuality",
    "ExportRead",
    "ExportSettings",
    "ExportStatus",
    "ExportType",
    "RecordingChunkRead",
    "SessionMetadata",
    "SessionPage",
    "SessionRead",
    "SessionStatus",
    "SessionUpdate",
    "VideoSummary",
    "ensure_utc",
]
