"""Pydantic models for reporting enrichment outcomes."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from video_enrichment.core.models import EnrichmentRecord
from video_enrichment.services.scheduler import EnrichmentOutcome


class AdSegmentSnapshot(BaseModel):
    start: float
    end: float
    confidence: float
    detector_version: str


class RecordSnapshot(BaseModel):
    video_id: str
    status: str
    title: str | None
    channel_id: str | None
    published_at: datetime | None
    duration_seconds: int | None
    transcript_digest: str | None
    ad_segments: list[AdSegmentSnapshot] | None
    attempt_count: int
    last_attempt_at: datetime | None
    last_error: str | None
    last_error_retryable: bool = False
    version: int

    @classmethod
    def from_record(cls, record: EnrichmentRecord) -> RecordSnapshot:
        metadata = record.metadata
        segments = None
        if record.ad_segments is not None:
            segments = [AdSegmentSnapshot(**segment.to_dict()) for segment in record.ad_segments]
        return cls(
            video_id=record.video_id,
            status=record.status.value,
            title=metadata.title if metadata else None,
            channel_id=metadata.channel_id if metadata else None,
            published_at=metadata.published_at if metadata else None,
            duration_seconds=metadata.duration_seconds if metadata else None,
            transcript_digest=record.transcript_digest,
            ad_segments=segments,
            attempt_count=record.attempt_count,
            last_attempt_at=record.last_attempt_at,
            last_error=record.last_error,
            last_error_retryable=record.last_error_retryable,
            version=record.version,
        )


class OutcomeReport(BaseModel):
    """One line of batch output: the final record or the failure reason."""

    video_id: str
    state: str
    attempts: int
    reason: str | None = None
    record: RecordSnapshot | None = None

    @classmethod
    def from_outcome(cls, outcome: EnrichmentOutcome) -> OutcomeReport:
        return cls(
            video_id=outcome.video_id,
            state=outcome.state.value,
            attempts=outcome.attempts,
            reason=outcome.reason,
            record=RecordSnapshot.from_record(outcome.record) if outcome.record else None,
        )
