"""Enrichment record persistence with optimistic, version-checked writes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from video_enrichment.core.errors import ConflictError
from video_enrichment.core.models import AdSegment, EnrichmentRecord, EnrichmentStatus, VideoMetadata
from video_enrichment.db.models import EnrichmentRecordRow

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore(Protocol):
    async def get(self, video_id: str) -> EnrichmentRecord | None:
        ...

    async def put_conditional(self, record: EnrichmentRecord, expected_version: int) -> EnrichmentRecord:
        """Store `record` only if the stored version equals `expected_version`.

        `expected_version` is 0 when the caller believes no record exists yet.
        Returns the stored record carrying its new version; raises
        `ConflictError` otherwise.
        """
        ...

    async def list_pending(self, limit: int, *, max_attempts: int | None = None) -> list[EnrichmentRecord]:
        """Return records awaiting enrichment, oldest first.

        With `max_attempts`, FAILED records whose last error was retryable and
        whose `attempt_count` is below the budget are included as well.
        """
        ...


def _is_resumable(record: EnrichmentRecord, max_attempts: int | None) -> bool:
    if record.status is EnrichmentStatus.PENDING:
        return True
    return (
        max_attempts is not None
        and record.status is EnrichmentStatus.FAILED
        and record.last_error_retryable
        and record.attempt_count < max_attempts
    )


class InMemoryRecordStore:
    """Dictionary-backed store; each write completes without yielding to the event loop."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._records: dict[str, EnrichmentRecord] = {}
        self._clock = clock

    async def get(self, video_id: str) -> EnrichmentRecord | None:
        return self._records.get(video_id)

    async def put_conditional(self, record: EnrichmentRecord, expected_version: int) -> EnrichmentRecord:
        current = self._records.get(record.video_id)
        actual = current.version if current else 0
        if actual != expected_version:
            raise ConflictError(
                record.video_id,
                expected_version=expected_version,
                actual_version=actual if current else None,
            )
        created_at = current.created_at if current else self._clock()
        stored = replace(record, version=expected_version + 1, created_at=created_at)
        self._records[record.video_id] = stored
        return stored

    async def list_pending(self, limit: int, *, max_attempts: int | None = None) -> list[EnrichmentRecord]:
        pending = [r for r in self._records.values() if _is_resumable(r, max_attempts)]
        pending.sort(key=lambda r: (r.created_at or datetime.min.replace(tzinfo=timezone.utc), r.video_id))
        return pending[:limit]


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: EnrichmentRecordRow) -> EnrichmentRecord:
    metadata = None
    if row.title is not None and row.channel_id is not None:
        metadata = VideoMetadata(
            title=row.title,
            channel_id=row.channel_id,
            published_at=_aware(row.published_at),
            duration_seconds=row.duration_seconds,
        )
    segments = None
    if row.ad_segments is not None:
        segments = tuple(AdSegment.from_dict(item) for item in row.ad_segments)
    return EnrichmentRecord(
        video_id=row.video_id,
        status=EnrichmentStatus(row.status),
        metadata=metadata,
        transcript_digest=row.transcript_digest,
        ad_segments=segments,
        attempt_count=row.attempt_count,
        last_attempt_at=_aware(row.last_attempt_at),
        last_error=row.last_error,
        last_error_retryable=row.last_error_retryable,
        version=row.version,
        created_at=_aware(row.created_at),
    )


def _row_values(record: EnrichmentRecord) -> dict:
    metadata = record.metadata
    return {
        "status": record.status.value,
        "title": metadata.title if metadata else None,
        "channel_id": metadata.channel_id if metadata else None,
        "published_at": metadata.published_at if metadata else None,
        "duration_seconds": metadata.duration_seconds if metadata else None,
        "transcript_digest": record.transcript_digest,
        "ad_segments": (
            [segment.to_dict() for segment in record.ad_segments]
            if record.ad_segments is not None
            else None
        ),
        "attempt_count": record.attempt_count,
        "last_attempt_at": record.last_attempt_at,
        "last_error": record.last_error,
        "last_error_retryable": record.last_error_retryable,
    }


class SqlRecordStore:
    """Record store backed by the `enrichment_records` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, video_id: str) -> EnrichmentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(EnrichmentRecordRow, video_id)
            return _to_record(row) if row is not None else None

    async def _current_version(self, session: AsyncSession, video_id: str) -> int | None:
        return await session.scalar(
            select(EnrichmentRecordRow.version).where(EnrichmentRecordRow.video_id == video_id)
        )

    async def put_conditional(self, record: EnrichmentRecord, expected_version: int) -> EnrichmentRecord:
        values = _row_values(record)
        new_version = expected_version + 1
        now = utcnow()

        async with self._session_factory() as session:
            if expected_version == 0:
                row = EnrichmentRecordRow(
                    video_id=record.video_id, version=new_version, created_at=now, updated_at=now, **values
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    actual = await self._current_version(session, record.video_id)
                    raise ConflictError(
                        record.video_id, expected_version=expected_version, actual_version=actual
                    ) from exc
                return _to_record(row)

            stmt = (
                update(EnrichmentRecordRow)
                .where(
                    EnrichmentRecordRow.video_id == record.video_id,
                    EnrichmentRecordRow.version == expected_version,
                )
                .values(version=new_version, updated_at=now, **values)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                actual = await self._current_version(session, record.video_id)
                raise ConflictError(record.video_id, expected_version=expected_version, actual_version=actual)
            await session.commit()

            row = await session.get(EnrichmentRecordRow, record.video_id, populate_existing=True)
            return _to_record(row)

    async def list_pending(self, limit: int, *, max_attempts: int | None = None) -> list[EnrichmentRecord]:
        condition = EnrichmentRecordRow.status == EnrichmentStatus.PENDING.value
        if max_attempts is not None:
            condition = or_(
                condition,
                and_(
                    EnrichmentRecordRow.status == EnrichmentStatus.FAILED.value,
                    EnrichmentRecordRow.last_error_retryable.is_(True),
                    EnrichmentRecordRow.attempt_count < max_attempts,
                ),
            )
        stmt = (
            select(EnrichmentRecordRow)
            .where(condition)
            .order_by(EnrichmentRecordRow.created_at, EnrichmentRecordRow.video_id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]


async def reset_record(store: RecordStore, video_id: str) -> EnrichmentRecord:
    """Operator re-enqueue: put a video back into PENDING with a fresh attempt budget.

    Creates a PENDING record for unknown ids. ENRICHED records are returned
    unchanged; refreshing them is a forced enrichment, not a reset.
    """

    current = await store.get(video_id)
    if current is None:
        record = EnrichmentRecord(video_id=video_id)
        stored = await store.put_conditional(record, expected_version=0)
        logger.info("Created pending record", extra={"video_id": video_id})
        return stored

    if current.status is not EnrichmentStatus.FAILED:
        return current

    record = replace(
        current, status=EnrichmentStatus.PENDING, attempt_count=0, last_error=None, last_error_retryable=False
    )
    stored = await store.put_conditional(record, expected_version=current.version)
    logger.info(
        "Reset failed record to pending",
        extra={"video_id": video_id, "previous_attempts": current.attempt_count},
    )
    return stored


__all__ = [
    "InMemoryRecordStore",
    "RecordStore",
    "SqlRecordStore",
    "reset_record",
]
