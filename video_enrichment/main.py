"""FastAPI app entry point hosting the enrichment scheduler."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from video_enrichment.core.config import Settings, get_settings
from video_enrichment.services.components import EnrichmentComponents, build_components

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build FastAPI application."""

    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Video Enrichment Service", version="0.1.0")
    app.state.components = None

    @app.on_event("startup")
    async def _startup() -> None:
        components = build_components(settings, retain_outcomes=False)
        components.scheduler.start()
        components.intake.start()
        app.state.components = components
        logger.info("Enrichment service started")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        components: EnrichmentComponents | None = app.state.components
        if components is None:
            return
        await components.aclose()
        app.state.components = None

    @app.get("/healthz", tags=["health"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
