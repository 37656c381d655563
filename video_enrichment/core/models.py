"""Value types flowing through the enrichment pipeline."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    ENRICHED = "enriched"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class VideoMetadata:
    """Metadata fetched for a video; never mutated by the pipeline."""

    title: str
    channel_id: str
    published_at: datetime | None
    duration_seconds: int | None


@dataclass(slots=True, frozen=True)
class Cue:
    """A single caption line; `duration` is optional because not every source reports it."""

    start: float
    text: str
    duration: float | None = None


@dataclass(slots=True, frozen=True)
class Transcript:
    """Ordered caption cues for one video."""

    video_id: str
    cues: tuple[Cue, ...]
    language_code: str | None = None

    def digest(self) -> str:
        """Return a stable SHA-256 reference over the cue contents."""

        hasher = hashlib.sha256()
        for cue in self.cues:
            duration = "" if cue.duration is None else repr(cue.duration)
            hasher.update(f"{cue.start!r}\x1f{duration}\x1f{cue.text}\x1e".encode())
        return hasher.hexdigest()


@dataclass(slots=True, frozen=True)
class AdSegment:
    """A span of the transcript classified as advertising."""

    start: float
    end: float
    confidence: float
    detector_version: str

    def to_dict(self) -> dict[str, float | str]:
        return {
            "start": self.start,
            "end": self.end,
            "confidence": self.confidence,
            "detector_version": self.detector_version,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> AdSegment:
        return cls(
            start=float(payload["start"]),
            end=float(payload["end"]),
            confidence=float(payload["confidence"]),
            detector_version=str(payload["detector_version"]),
        )


@dataclass(slots=True, frozen=True)
class EnrichmentRecord:
    """The persisted enrichment state for one video.

    `ad_segments` is ``None`` until a detector has run, so an ENRICHED record
    with an empty tuple means "analysed, no ads found". A FAILED record whose
    `last_error_retryable` is set still has attempts worth making and is
    picked up again by intake until its attempt budget is spent.
    """

    video_id: str
    status: EnrichmentStatus = EnrichmentStatus.PENDING
    metadata: VideoMetadata | None = None
    transcript_digest: str | None = None
    ad_segments: tuple[AdSegment, ...] | None = None
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    last_error_retryable: bool = False
    version: int = 0
    created_at: datetime | None = field(default=None, compare=False)
