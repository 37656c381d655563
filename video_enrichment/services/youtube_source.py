"""Source clients for video metadata (YouTube Data API) and transcripts."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Protocol

import httpx
from youtube_transcript_api import (  # type: ignore[import-not-found]
    CouldNotRetrieveTranscript,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    YouTubeTranscriptApi,
)

from video_enrichment.core.config import Settings
from video_enrichment.core.errors import (
    FetchError,
    NotFoundError,
    RateLimitedError,
    TransientFetchError,
    UnauthorizedError,
)
from video_enrichment.core.models import Cue, Transcript, VideoMetadata

logger = logging.getLogger(__name__)

YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_QUOTA_REASONS = {"quotaExceeded", "rateLimitExceeded", "userRateLimitExceeded", "dailyLimitExceeded"}


class SourceClient(Protocol):
    async def fetch_metadata(self, video_id: str) -> VideoMetadata:
        ...

    async def fetch_transcript(self, video_id: str) -> Transcript:
        ...


def parse_iso_duration(value: str | None) -> int | None:
    """Convert an ISO-8601 duration such as ``PT1H2M3S`` into seconds."""

    if not value:
        return None
    match = _DURATION_RE.match(value.strip())
    if not match:
        return None
    parts = {key: int(raw) for key, raw in match.groupdict(default="0").items()}
    return parts["days"] * 86400 + parts["hours"] * 3600 + parts["minutes"] * 60 + parts["seconds"]


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Failed to parse datetime", extra={"value": value})
        return None


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    errors = (payload.get("error") or {}).get("errors") or []
    return {item.get("reason") for item in errors if item.get("reason")}


def classify_response(video_id: str, response: httpx.Response) -> FetchError | None:
    """Map a YouTube Data API response onto the fetch error taxonomy."""

    status = response.status_code
    if status < 400:
        return None
    if status == 429:
        return RateLimitedError(f"YouTube rate limited {video_id}", retry_after=_retry_after(response))
    if status == 403 and _error_reasons(response) & _QUOTA_REASONS:
        return RateLimitedError(f"YouTube quota exhausted for {video_id}", retry_after=_retry_after(response))
    if status in (401, 403):
        return UnauthorizedError(f"YouTube rejected credentials ({status})")
    if status >= 500:
        return TransientFetchError(f"YouTube returned {status} for {video_id}")
    return NotFoundError(f"YouTube rejected request for {video_id} ({status})")


class YouTubeSourceClient:
    """Fetches metadata over the Data API and captions through youtube-transcript-api."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str | None,
        languages: list[str],
        max_concurrency: int = 2,
        min_interval_ms: int = 500,
        transcript_api: YouTubeTranscriptApi | None = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._languages = list(languages)
        self._transcript_api = transcript_api or YouTubeTranscriptApi()
        self._fetch_semaphore = asyncio.Semaphore(max(max_concurrency, 1))
        self._rate_lock = asyncio.Lock()
        self._min_interval = max(min_interval_ms, 0) / 1000.0
        self._last_fetch_monotonic = 0.0

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> YouTubeSourceClient:
        return cls(
            client,
            api_key=settings.youtube_api_key,
            languages=settings.transcript_languages,
            max_concurrency=settings.transcript_max_concurrency,
            min_interval_ms=settings.transcript_min_interval_ms,
        )

    async def fetch_metadata(self, video_id: str) -> VideoMetadata:
        if not self._api_key:
            raise UnauthorizedError("Metadata fetch requires ENRICH_YOUTUBE_API_KEY")

        params = {"part": "snippet,contentDetails", "id": video_id, "key": self._api_key}
        try:
            response = await self._client.get(f"{YOUTUBE_API_BASE}/videos", params=params)
        except httpx.HTTPError as exc:
            raise TransientFetchError("Unable to contact YouTube Data API") from exc

        error = classify_response(video_id, response)
        if error is not None:
            raise error

        try:
            payload = response.json()
        except ValueError as exc:  # pragma: no cover - defensive for invalid JSON
            raise TransientFetchError("Invalid response from YouTube Data API") from exc

        items = payload.get("items") or []
        if not items:
            raise NotFoundError(f"Video {video_id} not found")

        snippet = items[0].get("snippet") or {}
        details = items[0].get("contentDetails") or {}
        return VideoMetadata(
            title=snippet.get("title") or video_id,
            channel_id=snippet.get("channelId") or "",
            published_at=_parse_datetime(snippet.get("publishedAt")),
            duration_seconds=parse_iso_duration(details.get("duration")),
        )

    async def _throttle_requests(self) -> None:
        """Ensure a minimum delay between outbound transcript requests."""

        if self._min_interval <= 0:
            return

        async with self._rate_lock:
            now = time.monotonic()
            sleep_for = (self._last_fetch_monotonic + self._min_interval) - now
            if sleep_for > 0:
                await asyncio.sleep(sleep_for)
                now = time.monotonic()
            self._last_fetch_monotonic = now

    def _blocking_fetch(self, video_id: str) -> Transcript:
        fetched = self._transcript_api.fetch(video_id, languages=self._languages)
        cues = tuple(
            Cue(start=float(snippet.start), text=snippet.text.strip(), duration=float(snippet.duration))
            for snippet in fetched
        )
        return Transcript(video_id=video_id, cues=cues, language_code=getattr(fetched, "language_code", None))

    async def fetch_transcript(self, video_id: str) -> Transcript:
        loop = asyncio.get_running_loop()
        try:
            async with self._fetch_semaphore:
                await self._throttle_requests()
                return await loop.run_in_executor(None, self._blocking_fetch, video_id)
        except (TranscriptsDisabled, VideoUnavailable) as exc:
            raise NotFoundError(f"No transcript can exist for {video_id}") from exc
        except NoTranscriptFound as exc:
            logger.info("Transcript not yet available", extra={"video_id": video_id})
            raise TransientFetchError(f"Transcript for {video_id} not yet available") from exc
        except RequestBlocked as exc:
            raise RateLimitedError(f"Transcript requests blocked for {video_id}") from exc
        except CouldNotRetrieveTranscript as exc:
            raise TransientFetchError(f"Transcript retrieval failed for {video_id}") from exc


__all__ = [
    "SourceClient",
    "YouTubeSourceClient",
    "classify_response",
    "parse_iso_duration",
]
