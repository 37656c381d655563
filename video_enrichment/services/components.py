"""Explicit wiring of the enrichment collaborators from a settings object."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from video_enrichment.core.config import Settings
from video_enrichment.db.session import create_engine, create_session_factory
from video_enrichment.services.ad_detector import AdDetector, build_detector
from video_enrichment.services.enrichment_pipeline import EnrichmentPipeline
from video_enrichment.services.intake_worker import IntakeWorker
from video_enrichment.services.record_store import SqlRecordStore
from video_enrichment.services.scheduler import PipelineScheduler
from video_enrichment.services.youtube_source import YouTubeSourceClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnrichmentComponents:
    settings: Settings
    engine: AsyncEngine
    http_client: httpx.AsyncClient
    store: SqlRecordStore
    detector: AdDetector
    pipeline: EnrichmentPipeline
    scheduler: PipelineScheduler
    intake: IntakeWorker

    async def aclose(self) -> None:
        await self.intake.stop()
        await self.scheduler.stop()
        await self.http_client.aclose()
        await self.engine.dispose()


def build_components(settings: Settings, *, retain_outcomes: bool = True) -> EnrichmentComponents:
    """Construct every collaborator; nothing is started yet.

    Service hosts pass `retain_outcomes=False`; they have no outcome consumer.
    """

    engine = create_engine(settings)
    store = SqlRecordStore(create_session_factory(engine))
    http_client = httpx.AsyncClient(
        headers={"User-Agent": "video-enrichment/0.1"},
        timeout=settings.metadata_timeout_seconds,
    )
    source = YouTubeSourceClient.from_settings(http_client, settings)
    detector = build_detector(settings)
    pipeline = EnrichmentPipeline(
        source=source,
        store=store,
        detector=detector,
        metadata_timeout=settings.metadata_timeout_seconds,
        transcript_timeout=settings.transcript_timeout_seconds,
    )
    scheduler = PipelineScheduler.from_settings(pipeline, settings, retain_outcomes=retain_outcomes)
    intake = IntakeWorker(
        store,
        scheduler,
        batch_size=settings.intake_batch_size,
        idle_sleep=settings.intake_poll_seconds,
    )
    logger.info(
        "Enrichment components built",
        extra={"detector": detector.version, "concurrency": settings.scheduler_concurrency},
    )
    return EnrichmentComponents(
        settings=settings,
        engine=engine,
        http_client=http_client,
        store=store,
        detector=detector,
        pipeline=pipeline,
        scheduler=scheduler,
        intake=intake,
    )


__all__ = ["EnrichmentComponents", "build_components"]
