"""Operator utility to put failed (or new) videos back into the PENDING queue."""

from __future__ import annotations

import asyncio
import sys

from video_enrichment.core.config import get_settings
from video_enrichment.core.errors import ConflictError
from video_enrichment.db.session import create_engine, create_session_factory
from video_enrichment.services.record_store import SqlRecordStore, reset_record


async def requeue_videos(video_ids: list[str]) -> None:
    engine = create_engine(get_settings())
    store = SqlRecordStore(create_session_factory(engine))
    try:
        for video_id in video_ids:
            try:
                record = await reset_record(store, video_id)
            except ConflictError:
                print(f"Video {video_id} changed concurrently; run again.")
                continue
            print(f"Video {video_id}: {record.status.value} (attempts={record.attempt_count}).")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python -m video_enrichment.jobs.requeue_video <YOUTUBE_ID> [<YOUTUBE_ID> ...]")
        sys.exit(1)

    asyncio.run(requeue_videos(sys.argv[1:]))
