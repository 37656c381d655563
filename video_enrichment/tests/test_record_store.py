"""Tests for the record stores and the operator reset."""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from video_enrichment.core.errors import ConflictError
from video_enrichment.core.models import AdSegment, EnrichmentRecord, EnrichmentStatus, VideoMetadata
from video_enrichment.db.models import Base
from video_enrichment.services.record_store import InMemoryRecordStore, SqlRecordStore, reset_record


def _memory_db_url() -> str:
    return f"sqlite+aiosqlite:///file:record_store_{uuid.uuid4().hex}?mode=memory&cache=shared"


def _enriched(video_id: str = "VID1") -> EnrichmentRecord:
    return EnrichmentRecord(
        video_id=video_id,
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
        last_attempt_at=datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc),
    )


@pytest_asyncio.fixture
async def sql_store() -> SqlRecordStore:
    engine = create_async_engine(_memory_db_url(), future=True, connect_args={"uri": True})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield SqlRecordStore(async_sessionmaker(engine, expire_on_commit=False))

    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, store, sql_store):
    return store if request.param == "memory" else sql_store


@pytest.mark.asyncio
async def test_first_write_creates_version_one(any_store):
    stored = await any_store.put_conditional(_enriched(), expected_version=0)

    assert stored.version == 1
    assert await any_store.get("VID1") == stored


@pytest.mark.asyncio
async def test_round_trip_preserves_segments_and_metadata(any_store):
    await any_store.put_conditional(_enriched(), expected_version=0)

    loaded = await any_store.get("VID1")

    assert loaded.status is EnrichmentStatus.ENRICHED
    assert loaded.metadata == _enriched().metadata
    assert loaded.ad_segments == _enriched().ad_segments
    assert loaded.last_attempt_at == datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_duplicate_create_conflicts(any_store):
    await any_store.put_conditional(_enriched(), expected_version=0)

    with pytest.raises(ConflictError) as excinfo:
        await any_store.put_conditional(_enriched(), expected_version=0)

    assert excinfo.value.actual_version == 1


@pytest.mark.asyncio
async def test_stale_update_conflicts_and_leaves_winner(any_store):
    first = await any_store.put_conditional(_enriched(), expected_version=0)
    winner = await any_store.put_conditional(replace(first, attempt_count=2), expected_version=1)

    with pytest.raises(ConflictError):
        await any_store.put_conditional(replace(first, attempt_count=9), expected_version=1)

    stored = await any_store.get("VID1")
    assert stored.version == 2
    assert stored.attempt_count == 2
    assert stored == winner


@pytest.mark.asyncio
async def test_list_pending_only_returns_pending(any_store):
    await any_store.put_conditional(_enriched("VID1"), expected_version=0)
    await any_store.put_conditional(EnrichmentRecord(video_id="VID2"), expected_version=0)

    pending = await any_store.list_pending(10)

    assert [record.video_id for record in pending] == ["VID2"]
    assert pending[0].ad_segments is None


@pytest.mark.asyncio
async def test_reset_record_moves_failed_back_to_pending(any_store):
    failed = replace(
        _enriched(),
        status=EnrichmentStatus.FAILED,
        ad_segments=None,
        attempt_count=5,
        last_error="boom",
        last_error_retryable=True,
    )
    await any_store.put_conditional(failed, expected_version=0)

    reset = await reset_record(any_store, "VID1")

    assert reset.status is EnrichmentStatus.PENDING
    assert reset.attempt_count == 0
    assert reset.last_error is None
    assert reset.last_error_retryable is False
    assert reset.version == 2


@pytest.mark.asyncio
async def test_reset_record_leaves_enriched_untouched_and_creates_unknown(any_store):
    enriched = await any_store.put_conditional(_enriched(), expected_version=0)

    assert await reset_record(any_store, "VID1") == enriched

    created = await reset_record(any_store, "NEW1")
    assert created.status is EnrichmentStatus.PENDING
    assert created.attempt_count == 0
    assert created.version == 1


@pytest.mark.asyncio
async def test_in_memory_store_stamps_created_at(clock):
    store = InMemoryRecordStore(clock=clock)
    stored = await store.put_conditional(EnrichmentRecord(video_id="VID1"), expected_version=0)
    assert stored.created_at == clock.now


@pytest.mark.asyncio
async def test_list_pending_includes_failed_records_with_budget_left(any_store):
    base = replace(_enriched(), status=EnrichmentStatus.FAILED, ad_segments=None, last_error="boom")
    await any_store.put_conditional(
        replace(base, video_id="RETRY", attempt_count=2, last_error_retryable=True), expected_version=0
    )
    await any_store.put_conditional(
        replace(base, video_id="SPENT", attempt_count=5, last_error_retryable=True), expected_version=0
    )
    await any_store.put_conditional(
        replace(base, video_id="GONE", attempt_count=1, last_error_retryable=False), expected_version=0
    )
    await any_store.put_conditional(EnrichmentRecord(video_id="NEW"), expected_version=0)

    resumable = await any_store.list_pending(10, max_attempts=5)

    assert sorted(record.video_id for record in resumable) == ["NEW", "RETRY"]
    assert [record.video_id for record in await any_store.list_pending(10)] == ["NEW"]
    retry = next(record for record in resumable if record.video_id == "RETRY")
    assert retry.last_error_retryable is True
