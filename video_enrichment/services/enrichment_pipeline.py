"""Single-attempt fetch -> detect -> persist for one video."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime
from typing import TypeVar

from video_enrichment.core.errors import (
    ConflictError,
    DetectionFailedError,
    DetectorError,
    EnrichmentCancelledError,
    FetchError,
    FetchFailedError,
    PersistConflictError,
    PipelineError,
    TransientFetchError,
)
from video_enrichment.core.models import (
    AdSegment,
    EnrichmentRecord,
    EnrichmentStatus,
    Transcript,
    VideoMetadata,
)
from video_enrichment.services.ad_detector import AdDetector
from video_enrichment.services.record_store import RecordStore, utcnow
from video_enrichment.services.youtube_source import SourceClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _apply_success(
    record: EnrichmentRecord,
    *,
    metadata: VideoMetadata,
    transcript: Transcript,
    segments: tuple[AdSegment, ...],
    now: datetime,
) -> EnrichmentRecord:
    return replace(
        record,
        status=EnrichmentStatus.ENRICHED,
        metadata=metadata,
        transcript_digest=transcript.digest(),
        ad_segments=segments,
        attempt_count=record.attempt_count + 1,
        last_attempt_at=now,
        last_error=None,
        last_error_retryable=False,
    )


def _apply_failure(
    record: EnrichmentRecord,
    error: PipelineError,
    *,
    now: datetime,
    metadata: VideoMetadata | None = None,
) -> EnrichmentRecord:
    failed = replace(
        record,
        attempt_count=record.attempt_count + 1,
        last_attempt_at=now,
        last_error=str(error),
        last_error_retryable=error.retryable,
    )
    if record.status is EnrichmentStatus.ENRICHED:
        # A failed refresh never discards a previous successful generation.
        return failed
    return replace(failed, status=EnrichmentStatus.FAILED, metadata=metadata or record.metadata)


class EnrichmentPipeline:
    """Produces and persists one enrichment generation per call.

    `enrich` makes exactly one attempt; retrying is the caller's concern.
    Concurrent attempts for the same video are arbitrated by the store's
    conditional write, so no lock is held here.
    """

    def __init__(
        self,
        *,
        source: SourceClient,
        store: RecordStore,
        detector: AdDetector,
        clock: Callable[[], datetime] = utcnow,
        metadata_timeout: float = 10.0,
        transcript_timeout: float = 30.0,
    ) -> None:
        self._source = source
        self._store = store
        self._detector = detector
        self._clock = clock
        self._metadata_timeout = metadata_timeout
        self._transcript_timeout = transcript_timeout

    @property
    def detector_version(self) -> str:
        return self._detector.version

    async def _fetch(self, stage: str, call: Awaitable[T], timeout: float) -> T:
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as exc:
            raise TransientFetchError(f"{stage} fetch timed out after {timeout}s") from exc

    async def _persist(
        self,
        record: EnrichmentRecord,
        *,
        expected_version: int,
        failure: PipelineError | None = None,
    ) -> EnrichmentRecord:
        try:
            return await self._store.put_conditional(record, expected_version)
        except ConflictError as exc:
            winner = await self._store.get(record.video_id)
            if winner is None:
                raise
            logger.info(
                "Concurrent writer committed first",
                extra={"video_id": record.video_id, "winner_version": winner.version},
            )
            raise PersistConflictError(winner, failure=failure) from exc

    async def _fail(
        self,
        previous: EnrichmentRecord,
        error: PipelineError,
        *,
        now: datetime,
        metadata: VideoMetadata | None = None,
    ) -> None:
        failed = _apply_failure(previous, error, now=now, metadata=metadata)
        await self._persist(failed, expected_version=previous.version, failure=error)

    async def _fetch_failed(
        self,
        previous: EnrichmentRecord,
        stage: str,
        cause: FetchError,
        *,
        now: datetime,
        metadata: VideoMetadata | None,
    ) -> FetchFailedError:
        error = FetchFailedError(stage, cause)
        logger.warning(
            "Fetch failed",
            extra={"video_id": previous.video_id, "stage": stage, "kind": cause.kind, "error": str(cause)},
        )
        await self._fail(previous, error, now=now, metadata=metadata)
        return error

    async def enrich(
        self,
        video_id: str,
        *,
        force: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> EnrichmentRecord:
        """Enrich `video_id` once and return the stored record.

        Raises `FetchFailedError`, `DetectionFailedError` or
        `PersistConflictError` (carrying the winning record). When
        `should_stop` turns true after a fetch returns, the attempt is
        abandoned before anything is written.
        """

        previous = await self._store.get(video_id)
        if previous is not None and previous.status is EnrichmentStatus.ENRICHED and not force:
            logger.debug("Already enriched; skipping", extra={"video_id": video_id})
            return previous

        previous = previous or EnrichmentRecord(video_id=video_id)
        now = self._clock()
        metadata: VideoMetadata | None = None
        stage = "metadata"

        try:
            metadata = await self._fetch(stage, self._source.fetch_metadata(video_id), self._metadata_timeout)
            if should_stop and should_stop():
                raise EnrichmentCancelledError(video_id)
            stage = "transcript"
            transcript = await self._fetch(
                stage, self._source.fetch_transcript(video_id), self._transcript_timeout
            )
            if should_stop and should_stop():
                raise EnrichmentCancelledError(video_id)
        except FetchError as exc:
            error = await self._fetch_failed(previous, stage, exc, now=now, metadata=metadata)
            raise error from exc
        except PipelineError:
            raise
        except Exception as exc:
            # Source clients that leak library errors still count as a failed attempt.
            logger.exception("Unexpected %s fetch error", stage, extra={"video_id": video_id})
            cause = TransientFetchError(f"unexpected {type(exc).__name__} during {stage} fetch")
            error = await self._fetch_failed(previous, stage, cause, now=now, metadata=metadata)
            raise error from exc

        try:
            segments = self._detector.detect(transcript)
        except DetectorError as exc:
            detection_error = DetectionFailedError(exc)
            logger.warning(
                "Ad detection failed",
                extra={"video_id": video_id, "kind": exc.kind, "detector": self._detector.version},
            )
            await self._fail(previous, detection_error, now=now, metadata=metadata)
            raise detection_error from exc

        record = _apply_success(previous, metadata=metadata, transcript=transcript, segments=segments, now=now)
        stored = await self._persist(record, expected_version=previous.version)
        logger.info(
            "Video enriched",
            extra={
                "video_id": video_id,
                "segments": len(segments),
                "attempt_count": stored.attempt_count,
                "version": stored.version,
            },
        )
        return stored


__all__ = ["EnrichmentPipeline"]
