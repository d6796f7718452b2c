"""Segment records shared by the recorder, the store and the upload queue."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

CONTENT_TYPES: dict[str, str] = {
    "wav": "audio/wav",
    "webm": "video/webm",
    "pcm": "application/octet-stream",
}

AUDIO_WEBM_CONTENT_TYPE = "audio/webm"


def new_segment_id() -> str:
    return uuid.uuid4().hex


def format_filename_timestamp(created_at: datetime) -> str:
    """Render ``created_at`` as an ISO-8601 UTC stamp safe for filenames.

    ``2024-05-01T10:00:30.125Z`` becomes ``2024-05-01T10-00-30-125Z``.
    """

    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    utc = created_at.astimezone(timezone.utc)
    stamp = utc.strftime("%Y-%m-%dT%H:%M:%S") + f".{utc.microsecond // 1000:03d}Z"
    return stamp.replace(":", "-").replace(".", "-")


def build_segment_filename(kind: str, created_at: datetime, sequence: int, ext: str) -> str:
    ext = ext.lstrip(".")
    stamp = format_filename_timestamp(created_at)
    return f"{kind}_recording_{stamp}_chunk_{sequence}.{ext}"


def content_type_for(kind: str, ext: str) -> str:
    ext = ext.lstrip(".").lower()
    if ext == "webm" and kind == "audio":
        return AUDIO_WEBM_CONTENT_TYPE
    return CONTENT_TYPES.get(ext, "application/octet-stream")


@dataclass
class SegmentDescriptor:
    """Queue entry for a stored segment; the payload lives in the store."""

    id: str
    filename: str
    created_at: datetime
    content_type: str = "application/octet-stream"
    attempts: int = 0


@dataclass(frozen=True)
class Segment:
    id: str
    filename: str
    payload: bytes = field(repr=False)
    created_at: datetime
    kind: str
    sequence: int
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.payload)

    def descriptor(self) -> SegmentDescriptor:
        return SegmentDescriptor(
            id=self.id,
            filename=self.filename,
            created_at=self.created_at,
            content_type=self.content_type,
        )
