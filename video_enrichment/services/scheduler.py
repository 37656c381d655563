"""Worker pool that drives the enrichment pipeline with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from video_enrichment.core.config import Settings
from video_enrichment.core.errors import EnrichmentCancelledError, PersistConflictError, PipelineError
from video_enrichment.core.models import EnrichmentRecord, EnrichmentStatus
from video_enrichment.services.enrichment_pipeline import EnrichmentPipeline

logger = logging.getLogger(__name__)


class ItemState(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RETRY_WAIT = "retry_wait"
    DONE = "done"
    DEAD = "dead"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class _WorkItem:
    video_id: str
    force: bool
    state: ItemState = ItemState.QUEUED
    attempts: int = 0
    cancel_requested: bool = False
    retry_task: asyncio.Task | None = None


@dataclass(slots=True, frozen=True)
class EnrichmentOutcome:
    """Terminal result for one video: a record when DONE, a reason otherwise."""

    video_id: str
    state: ItemState
    record: EnrichmentRecord | None
    reason: str | None
    attempts: int


def compute_backoff(
    attempt: int,
    *,
    base_seconds: float,
    cap_seconds: float,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Return the delay before retrying after `attempt` failed attempts."""

    exponent = max(attempt - 1, 0)
    delay = max(base_seconds, 0.0) * (2**exponent)
    if jitter > 0 and rng is not None:
        delay *= 1 + jitter * rng.random()
    return min(delay, cap_seconds)


class PipelineScheduler:
    """Runs `enrich` over a queue of video ids with at most `concurrency` in flight.

    Settled outcomes are kept for `outcomes()` only when `retain_outcomes` is
    set; a long-running service without a consumer leaves it off and relies on
    the settle log lines instead.
    """

    def __init__(
        self,
        pipeline: EnrichmentPipeline,
        *,
        concurrency: int = 4,
        max_attempts: int = 5,
        backoff_base: float = 30.0,
        backoff_cap: float = 1800.0,
        jitter: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        retain_outcomes: bool = True,
    ) -> None:
        self._pipeline = pipeline
        self._concurrency = max(concurrency, 1)
        self._max_attempts = max(max_attempts, 1)
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._retain_outcomes = retain_outcomes

        self._queue: asyncio.Queue[_WorkItem] = asyncio.Queue()
        self._outcomes: asyncio.Queue[EnrichmentOutcome | None] = asyncio.Queue()
        self._items: dict[str, _WorkItem] = {}
        self._workers: list[asyncio.Task] = []
        self._closed = False
        self._finished = False
        self._in_flight = 0

    @classmethod
    def from_settings(
        cls, pipeline: EnrichmentPipeline, settings: Settings, *, retain_outcomes: bool = True
    ) -> PipelineScheduler:
        return cls(
            pipeline,
            concurrency=settings.scheduler_concurrency,
            max_attempts=settings.scheduler_max_attempts,
            backoff_base=settings.backoff_base_seconds,
            backoff_cap=settings.backoff_cap_seconds,
            jitter=settings.backoff_jitter,
            retain_outcomes=retain_outcomes,
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def pending(self) -> int:
        """Items accepted but not yet settled."""
        return len(self._items)

    @property
    def retains_outcomes(self) -> bool:
        return self._retain_outcomes

    @property
    def retained_outcomes(self) -> int:
        # The end-of-stream sentinel stays queued once finished.
        return self._outcomes.qsize() - (1 if self._finished else 0)

    def state_of(self, video_id: str) -> ItemState | None:
        item = self._items.get(video_id)
        return item.state if item else None

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"enrichment-worker-{index}")
            for index in range(self._concurrency)
        ]

    def enqueue(
        self,
        video_ids: Iterable[str],
        *,
        force: bool = False,
        attempts: Mapping[str, int] | None = None,
    ) -> int:
        """Queue ids for enrichment; ids already in progress are ignored.

        `attempts` carries attempts already spent on a video (for example by a
        previous process), so the attempt budget holds across restarts.
        """

        if self._closed:
            raise RuntimeError("Scheduler intake is closed")

        spent = attempts or {}
        added = 0
        for video_id in video_ids:
            if video_id in self._items:
                continue
            item = _WorkItem(video_id=video_id, force=force, attempts=max(spent.get(video_id, 0), 0))
            self._items[video_id] = item
            self._queue.put_nowait(item)
            added += 1
        return added

    def close(self) -> None:
        """Stop accepting ids; the outcome stream ends once every item settles."""

        self._closed = True
        self._maybe_finish()

    def cancel(self, video_id: str) -> bool:
        """Cancel a queued or waiting item now, or an in-flight item after its attempt."""

        item = self._items.get(video_id)
        if item is None:
            return False
        if item.state is ItemState.IN_FLIGHT:
            item.cancel_requested = True
            return True
        if item.retry_task is not None:
            item.retry_task.cancel()
            item.retry_task = None
        self._settle(item, ItemState.CANCELLED, reason="cancelled")
        return True

    async def outcomes(self) -> AsyncIterator[EnrichmentOutcome]:
        """Yield outcomes as items settle; ends only after `close` once all items settled."""

        if not self._retain_outcomes:
            raise RuntimeError("Scheduler was built without outcome retention")
        while True:
            outcome = await self._outcomes.get()
            if outcome is None:
                # Leave the sentinel for any later reader.
                self._outcomes.put_nowait(None)
                return
            yield outcome

    async def run(self, video_ids: Iterable[str], *, force: bool = False) -> list[EnrichmentOutcome]:
        """Enrich a closed batch and return every outcome."""

        if not self._retain_outcomes:
            raise RuntimeError("Scheduler was built without outcome retention")
        self.start()
        self.enqueue(video_ids, force=force)
        self.close()
        results = [outcome async for outcome in self.outcomes()]
        await self.stop()
        return results

    async def stop(self) -> None:
        """Cancel pending work, let in-flight attempts finish, then stop the workers."""

        self._closed = True
        for item in list(self._items.values()):
            if item.state is ItemState.IN_FLIGHT:
                item.cancel_requested = True
            else:
                self.cancel(item.video_id)

        if self._workers:
            await self._queue.join()
            for task in self._workers:
                task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []
        self._maybe_finish()

    def _maybe_finish(self) -> None:
        if self._closed and not self._items and not self._finished:
            self._finished = True
            self._outcomes.put_nowait(None)

    def _settle(
        self,
        item: _WorkItem,
        state: ItemState,
        *,
        record: EnrichmentRecord | None = None,
        reason: str | None = None,
    ) -> None:
        item.state = state
        self._items.pop(item.video_id, None)
        if self._retain_outcomes:
            self._outcomes.put_nowait(
                EnrichmentOutcome(
                    video_id=item.video_id,
                    state=state,
                    record=record,
                    reason=reason,
                    attempts=item.attempts,
                )
            )
        log = logger.warning if state is ItemState.DEAD else logger.info
        log(
            "Enrichment item settled",
            extra={"video_id": item.video_id, "state": state.value, "attempts": item.attempts, "reason": reason},
        )
        self._maybe_finish()

    async def _worker(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item.state is ItemState.QUEUED:
                    await self._attempt(item)
            finally:
                self._queue.task_done()

    async def _attempt(self, item: _WorkItem) -> None:
        item.state = ItemState.IN_FLIGHT
        item.attempts += 1
        self._in_flight += 1
        try:
            record = await self._pipeline.enrich(
                item.video_id,
                force=item.force,
                should_stop=lambda: item.cancel_requested,
            )
        except PersistConflictError as exc:
            if exc.winner.status is EnrichmentStatus.ENRICHED:
                self._settle(item, ItemState.DONE, record=exc.winner)
            elif exc.failure is not None:
                self._handle_failure(
                    item,
                    reason=str(exc.failure),
                    retryable=exc.failure.retryable,
                    retry_after=getattr(exc.failure, "retry_after", None),
                )
            else:
                # Our success lost to a write that left the video unenriched.
                self._handle_failure(item, reason=str(exc), retryable=True)
        except EnrichmentCancelledError:
            self._settle(item, ItemState.CANCELLED, reason="cancelled")
        except PipelineError as exc:
            self._handle_failure(
                item,
                reason=str(exc),
                retryable=exc.retryable,
                retry_after=getattr(exc, "retry_after", None),
            )
        except Exception as exc:
            logger.exception("Unexpected enrichment error", extra={"video_id": item.video_id})
            self._handle_failure(item, reason=f"unexpected error: {type(exc).__name__}", retryable=True)
        else:
            self._settle(item, ItemState.DONE, record=record)
        finally:
            self._in_flight -= 1

    def _handle_failure(
        self,
        item: _WorkItem,
        *,
        reason: str,
        retryable: bool,
        retry_after: float | None = None,
    ) -> None:
        if item.cancel_requested:
            self._settle(item, ItemState.CANCELLED, reason=f"cancelled after: {reason}")
            return
        if not retryable or item.attempts >= self._max_attempts:
            self._settle(item, ItemState.DEAD, reason=reason)
            return

        delay = compute_backoff(
            item.attempts,
            base_seconds=self._backoff_base,
            cap_seconds=self._backoff_cap,
            jitter=self._jitter,
            rng=self._rng,
        )
        if retry_after is not None:
            delay = max(delay, retry_after)

        item.state = ItemState.RETRY_WAIT
        item.retry_task = asyncio.create_task(self._requeue_after(item, delay))
        logger.info(
            "Scheduling retry",
            extra={"video_id": item.video_id, "attempts": item.attempts, "delay_seconds": delay, "reason": reason},
        )

    async def _requeue_after(self, item: _WorkItem, delay: float) -> None:
        await self._sleep(delay)
        if item.state is ItemState.RETRY_WAIT:
            item.state = ItemState.QUEUED
            item.retry_task = None
            self._queue.put_nowait(item)


__all__ = [
    "EnrichmentOutcome",
    "ItemState",
    "PipelineScheduler",
    "compute_backoff",
]
