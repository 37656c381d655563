"""Background loop that feeds PENDING (and resumable FAILED) records into the scheduler."""

from __future__ import annotations

import asyncio
import logging

from video_enrichment.services.record_store import RecordStore
from video_enrichment.services.scheduler import PipelineScheduler

logger = logging.getLogger(__name__)


async def enqueue_pending(store: RecordStore, scheduler: PipelineScheduler, *, batch_size: int = 50) -> int:
    """Queue pending and resumable failed records; returns how many were newly queued."""

    records = await store.list_pending(batch_size, max_attempts=scheduler.max_attempts)
    if not records:
        return 0
    added = scheduler.enqueue(
        (record.video_id for record in records),
        attempts={record.video_id: record.attempt_count for record in records},
    )
    if added:
        logger.info("Queued pending videos", extra={"count": added})
    return added


class IntakeWorker:
    """Polls the store for pending videos while the service runs."""

    def __init__(
        self,
        store: RecordStore,
        scheduler: PipelineScheduler,
        *,
        batch_size: int = 50,
        idle_sleep: float = 30.0,
        active_sleep: float = 2.0,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._batch_size = batch_size
        self._idle_sleep = idle_sleep
        self._active_sleep = active_sleep
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                added = await enqueue_pending(self._store, self._scheduler, batch_size=self._batch_size)
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("Intake iteration failed")
                await asyncio.sleep(self._idle_sleep)
                continue

            await asyncio.sleep(self._active_sleep if added else self._idle_sleep)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:  # pragma: no cover - event loop behaviour
            pass
        finally:
            self._task = None


__all__ = ["IntakeWorker", "enqueue_pending"]
