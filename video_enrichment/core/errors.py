"""Error taxonomy shared by source clients, detectors, the store and the pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from video_enrichment.core.models import EnrichmentRecord


class FetchError(RuntimeError):
    """Raised by source clients when metadata or a transcript cannot be fetched."""

    kind = "fetch error"
    retryable = False


class NotFoundError(FetchError):
    kind = "not found"


class UnauthorizedError(FetchError):
    kind = "unauthorized"


class TransientFetchError(FetchError):
    kind = "transient error"
    retryable = True


class RateLimitedError(FetchError):
    kind = "rate limited"
    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DetectorError(ValueError):
    """Raised when an ad detector cannot analyse a transcript."""

    kind = "detector error"


class EmptyTranscriptError(DetectorError):
    kind = "empty transcript"


class UnparseableTranscriptError(DetectorError):
    kind = "unparseable transcript"


class ConflictError(RuntimeError):
    """Raised by a record store when a conditional write loses against a newer version."""

    def __init__(self, video_id: str, *, expected_version: int, actual_version: int | None) -> None:
        super().__init__(
            f"Version conflict for {video_id}: expected {expected_version}, found {actual_version}"
        )
        self.video_id = video_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PipelineError(RuntimeError):
    """Terminal outcome of a single `enrich` attempt."""

    retryable = False


class FetchFailedError(PipelineError):
    def __init__(self, stage: str, cause: FetchError) -> None:
        super().__init__(f"{stage} fetch failed: {cause.kind}")
        self.stage = stage
        self.cause = cause
        self.retryable = cause.retryable

    @property
    def retry_after(self) -> float | None:
        return getattr(self.cause, "retry_after", None)


class DetectionFailedError(PipelineError):
    def __init__(self, cause: DetectorError) -> None:
        super().__init__(f"detection failed: {cause.kind}")
        self.cause = cause


class EnrichmentCancelledError(PipelineError):
    """The attempt was abandoned at a checkpoint before anything was written."""

    def __init__(self, video_id: str) -> None:
        super().__init__(f"cancelled: {video_id}")
        self.video_id = video_id


class PersistConflictError(PipelineError):
    """Another writer committed first; `winner` is the stored record.

    `failure` is set when the losing write was recording a failed attempt.
    """

    def __init__(self, winner: EnrichmentRecord, *, failure: PipelineError | None = None) -> None:
        super().__init__(f"persist conflict: {winner.video_id} already at version {winner.version}")
        self.winner = winner
        self.failure = failure
