"""Enrich a fixed batch of videos and print one JSON outcome per line."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from video_enrichment.core.config import Settings, get_settings
from video_enrichment.schema.enrichment import OutcomeReport
from video_enrichment.services.components import build_components
from video_enrichment.services.scheduler import ItemState


async def enrich_batch(video_ids: Sequence[str], *, settings: Settings, force: bool = False) -> list[OutcomeReport]:
    components = build_components(settings)
    try:
        outcomes = await components.scheduler.run(video_ids, force=force)
    finally:
        await components.aclose()
    return [OutcomeReport.from_outcome(outcome) for outcome in outcomes]


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Fetch, analyse and persist enrichment records for YouTube videos",
        epilog="Example: python -m video_enrichment.jobs.enrich_batch dQw4w9WgXcQ --force",
    )
    parser.add_argument("video_ids", nargs="+", help="YouTube video ids")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-enrich videos that already have an enriched record",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, stream=sys.stderr)

    reports = asyncio.run(enrich_batch(args.video_ids, settings=settings, force=args.force))
    for report in reports:
        print(report.model_dump_json())
    return 0 if all(report.state == ItemState.DONE.value for report in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
