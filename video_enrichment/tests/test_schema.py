import json
from datetime import datetime, timezone

from video_enrichment.core.models import AdSegment, EnrichmentRecord, EnrichmentStatus, VideoMetadata
from video_enrichment.schema.enrichment import OutcomeReport
from video_enrichment.services.scheduler import EnrichmentOutcome, ItemState


def test_done_outcome_serialises_record_snapshot():
    record = EnrichmentRecord(
        video_id="VID1",
        status=EnrichmentStatus.ENRICHED,
        metadata=VideoMetadata(
            title="A Great Video",
            channel_id="UC" + "A" * 22,
            published_at=datetime(2024, 7, 16, 12, 0, tzinfo=timezone.utc),
            duration_seconds=754,
        ),
        transcript_digest="ab" * 32,
        ad_segments=(AdSegment(start=10.0, end=18.0, confidence=0.85, detector_version="keyword-gap/1"),),
        attempt_count=1,
        version=1,
    )
    outcome = EnrichmentOutcome(video_id="VID1", state=ItemState.DONE, record=record, reason=None, attempts=1)

    payload = json.loads(OutcomeReport.from_outcome(outcome).model_dump_json())

    assert payload["state"] == "done"
    assert payload["record"]["status"] == "enriched"
    assert payload["record"]["title"] == "A Great Video"
    assert payload["record"]["ad_segments"] == [
        {"start": 10.0, "end": 18.0, "confidence": 0.85, "detector_version": "keyword-gap/1"}
    ]


def test_dead_outcome_carries_reason_without_record():
    outcome = EnrichmentOutcome(
        video_id="VID2",
        state=ItemState.DEAD,
        record=None,
        reason="metadata fetch failed: not found",
        attempts=1,
    )

    report = OutcomeReport.from_outcome(outcome)

    assert report.record is None
    assert report.reason == "metadata fetch failed: not found"
    assert report.state == "dead"
