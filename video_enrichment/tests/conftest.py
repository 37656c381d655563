"""Shared fakes for pipeline and scheduler tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from video_enrichment.core.models import Cue, Transcript, VideoMetadata
from video_enrichment.services.ad_detector import KeywordGapDetector
from video_enrichment.services.enrichment_pipeline import EnrichmentPipeline
from video_enrichment.services.record_store import InMemoryRecordStore


class FixedClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def sponsored_transcript(video_id: str) -> Transcript:
    return Transcript(
        video_id=video_id,
        language_code="en",
        cues=(
            Cue(0.0, "welcome back to the channel", 3.0),
            Cue(3.0, "today we review a keyboard", 4.0),
            Cue(10.0, "this video is sponsored by acme vpn", 3.0),
            Cue(13.0, "use code TECH for 20% off", 3.0),
            Cue(16.0, "link in the description", 2.0),
            Cue(21.0, "ok back to the keyboard", 4.0),
        ),
    )


class FakeSource:
    """Scriptable source client that records every call."""

    def __init__(self) -> None:
        self.metadata_calls: list[str] = []
        self.transcript_calls: list[str] = []
        self.transcripts: dict[str, Transcript] = {}
        self.gate: asyncio.Event | None = None
        self.metadata_delay = 0.0
        self._failures: dict[tuple[str, str], list] = {}

    def fail(self, stage: str, video_id: str, error: Exception, *, times: int | None = None) -> None:
        """Raise `error` for `stage` of `video_id`, `times` times or forever."""

        self._failures[(stage, video_id)] = [error, times]

    def _maybe_raise(self, stage: str, video_id: str) -> None:
        entry = self._failures.get((stage, video_id))
        if entry is None:
            return
        error, remaining = entry
        if remaining is not None:
            if remaining <= 0:
                return
            entry[1] = remaining - 1
        raise error

    async def fetch_metadata(self, video_id: str) -> VideoMetadata:
        self.metadata_calls.append(video_id)
        await asyncio.sleep(self.metadata_delay)
        self._maybe_raise("metadata", video_id)
        return VideoMetadata(
            title=f"Video {video_id}",
            channel_id="UC" + "A" * 22,
            published_at=datetime(2024, 7, 16, 12, 0, tzinfo=timezone.utc),
            duration_seconds=600,
        )

    async def fetch_transcript(self, video_id: str) -> Transcript:
        self.transcript_calls.append(video_id)
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_raise("transcript", video_id)
        return self.transcripts.get(video_id) or sponsored_transcript(video_id)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: FixedClock) -> InMemoryRecordStore:
    return InMemoryRecordStore(clock=clock)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def pipeline(source: FakeSource, store: InMemoryRecordStore, clock: FixedClock) -> EnrichmentPipeline:
    return EnrichmentPipeline(source=source, store=store, detector=KeywordGapDetector(), clock=clock)


@pytest.fixture
def make_transcript():
    return sponsored_transcript
