"""Data models for jobs, chunks and transcripts."""

from __future__ import annotations

import mimetypes
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from scribe.exceptions import MediaValidationError

AUDIO_EXTENSIONS: set[str] = {".mp3", ".wav", ".m4a", ".ogg", ".flac"}
VIDEO_EXTENSIONS: set[str] = {".mp4", ".mov", ".webm"}
SUPPORTED_EXTENSIONS: set[str] = AUDIO_EXTENSIONS | VIDEO_EXTENSIONS


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class DiarizationBackend(str, Enum):
    HEURISTIC = "heuristic"
    EXTERNAL = "external"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


@dataclass
class Speaker:
    id: str
    label: str

    @classmethod
    def numbered(cls, number: int | str) -> Speaker:
        return cls(id=str(number), label=f"Speaker {number}")


@dataclass
class Segment:
    id: str
    start: float
    end: float
    text: str
    speaker: Speaker | None = None

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(
                f"start ({self.start}) must not be greater than end ({self.end})"
            )

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "start": self.start,
            "end": self.end,
            "text": self.text,
        }
        if self.speaker is not None:
            data["speaker"] = {"id": self.speaker.id, "label": self.speaker.label}
        return data


@dataclass
class Chunk:
    """A byte-range slice of the working media file, stored at ``path``.

    ``start`` and ``end`` are inclusive byte offsets into the source.
    """

    index: int
    start: int
    end: int
    path: Path

    @property
    def byte_range(self) -> tuple[int, int]:
        return (self.start, self.end)

    @property
    def size(self) -> int:
        return self.end - self.start + 1


@dataclass
class TranscriptResult:
    """Normalized ``{text, segments?}`` shape shared by every stage."""

    text: str
    segments: list[Segment] | None = None

    @property
    def has_speakers(self) -> bool:
        if not self.segments:
            return False
        return any(s.speaker is not None for s in self.segments)

    @property
    def speaker_ids(self) -> set[str]:
        if not self.segments:
            return set()
        return {s.speaker.id for s in self.segments if s.speaker is not None}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"text": self.text}
        if self.segments is not None:
            data["segments"] = [s.to_dict() for s in self.segments]
        return data


@dataclass
class TranscriptFragment:
    """Result for one chunk; segment times are relative to the chunk."""

    chunk_index: int
    text: str
    segments: list[Segment] | None = None


@dataclass
class Job:
    id: str
    source_path: Path
    media_kind: MediaKind
    speaker_identification: bool = False
    diarization_backend: DiarizationBackend = DiarizationBackend.HEURISTIC
    status: JobStatus = JobStatus.PENDING
    result_text: str | None = None
    result_segments: list[Segment] | None = None
    error_message: str | None = None
    progress_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)


def media_kind_for(path: Path, mime_type: str | None = None) -> MediaKind:
    """Classify a source as audio or video from its MIME type or extension."""
    if mime_type is None:
        mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type is not None:
        if mime_type.startswith("video/"):
            return MediaKind.VIDEO
        if mime_type.startswith("audio/"):
            return MediaKind.AUDIO
    if path.suffix.lower() in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return MediaKind.AUDIO


def validate_media_file(path: Path) -> None:
    if not path.exists():
        raise MediaValidationError(f"File not found: {path}")

    if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
        raise MediaValidationError(
            f"Unsupported format '{path.suffix}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    if path.stat().st_size == 0:
        raise MediaValidationError(f"File is empty: {path}")


def new_job(
    source_path: Path,
    *,
    speaker_identification: bool = False,
    diarization_backend: DiarizationBackend = DiarizationBackend.HEURISTIC,
    mime_type: str | None = None,
) -> Job:
    return Job(
        id=uuid.uuid4().hex,
        source_path=source_path,
        media_kind=media_kind_for(source_path, mime_type),
        speaker_identification=speaker_identification,
        diarization_backend=diarization_backend,
    )
