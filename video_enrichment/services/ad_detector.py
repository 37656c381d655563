"""Transcript analysers that locate sponsored segments.

Detectors are pure: the same detector version applied to the same transcript
always yields identical segments, so results can be recomputed and compared
against golden outputs.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Protocol

from video_enrichment.core.config import Settings
from video_enrichment.core.errors import EmptyTranscriptError, UnparseableTranscriptError
from video_enrichment.core.models import AdSegment, Cue, Transcript

CONFIDENCE_PRECISION = 4

SPONSOR_PHRASES: tuple[str, ...] = (
    "sponsored by",
    "sponsor of this video",
    "today's sponsor",
    "this video is brought to you by",
    "thanks to our sponsor",
    "promo code",
    "use code",
    "discount code",
    "link in the description",
    "first month free",
    "free trial",
    "check out",
)

_URL_RE = re.compile(r"https?://\S+|\b\w+\.(?:com|io|co|net)\b", re.IGNORECASE)
_PERCENT_OFF_RE = re.compile(r"\b\d{1,2}\s?%\s?off\b|\b\d{1,2} percent off\b", re.IGNORECASE)
_CALL_TO_ACTION_RE = re.compile(r"\b(?:go to|head over to|sign up|download|visit)\b", re.IGNORECASE)


class AdDetector(Protocol):
    """Anything that turns a transcript into ad segments."""

    version: str

    def detect(self, transcript: Transcript) -> tuple[AdSegment, ...]:
        ...


def validate_transcript(transcript: Transcript) -> tuple[Cue, ...]:
    """Return the cues of a well-formed transcript or raise a `DetectorError`."""

    cues = transcript.cues
    if not cues or not any(cue.text.strip() for cue in cues):
        raise EmptyTranscriptError(f"Transcript for {transcript.video_id} has no cues")

    previous = 0.0
    for index, cue in enumerate(cues):
        if not math.isfinite(cue.start) or cue.start < 0:
            raise UnparseableTranscriptError(f"Cue {index} has invalid offset {cue.start!r}")
        if cue.start < previous:
            raise UnparseableTranscriptError(
                f"Cue {index} starts at {cue.start} before previous cue at {previous}"
            )
        if cue.duration is not None and (not math.isfinite(cue.duration) or cue.duration < 0):
            raise UnparseableTranscriptError(f"Cue {index} has invalid duration {cue.duration!r}")
        previous = cue.start
    return cues


def _cue_end(cues: tuple[Cue, ...], index: int) -> float:
    cue = cues[index]
    if cue.duration is not None:
        return cue.start + cue.duration
    if index + 1 < len(cues):
        return cues[index + 1].start
    return cue.start


def _gap_before(cues: tuple[Cue, ...], index: int, threshold: float) -> bool:
    if index == 0:
        return True
    return cues[index].start - _cue_end(cues, index - 1) >= threshold


def _gap_after(cues: tuple[Cue, ...], index: int, threshold: float) -> bool:
    if index + 1 >= len(cues):
        return True
    return cues[index + 1].start - _cue_end(cues, index) >= threshold


@dataclass(frozen=True)
class KeywordGapDetector:
    """Sponsor-phrase heuristic that snaps segments to surrounding silence gaps."""

    silence_gap_seconds: float = 2.5
    merge_window_seconds: float = 20.0
    max_extension_cues: int = 6
    phrases: tuple[str, ...] = SPONSOR_PHRASES
    version: str = "keyword-gap/1"

    def _matches(self, text: str) -> set[str]:
        lowered = text.lower()
        return {phrase for phrase in self.phrases if phrase in lowered}

    def detect(self, transcript: Transcript) -> tuple[AdSegment, ...]:
        cues = validate_transcript(transcript)

        triggers = [(index, self._matches(cue.text)) for index, cue in enumerate(cues)]
        triggers = [(index, hits) for index, hits in triggers if hits]
        if not triggers:
            return ()

        groups: list[tuple[int, int, set[str]]] = []
        for index, hits in triggers:
            if groups:
                first, last, seen = groups[-1]
                if cues[index].start - _cue_end(cues, last) <= self.merge_window_seconds:
                    groups[-1] = (first, index, seen | hits)
                    continue
            groups.append((index, index, set(hits)))

        segments: list[AdSegment] = []
        for first, last, hits in groups:
            # Ad reads usually run past the last sponsor phrase until the host pauses.
            end_index = last
            while (
                end_index - last < self.max_extension_cues
                and not _gap_after(cues, end_index, self.silence_gap_seconds)
            ):
                end_index += 1

            bounded = _gap_before(cues, first, self.silence_gap_seconds)
            bounded_after = _gap_after(cues, end_index, self.silence_gap_seconds)
            confidence = 0.35 + 0.15 * len(hits) + 0.1 * bounded + 0.1 * bounded_after
            segments.append(
                AdSegment(
                    start=cues[first].start,
                    end=_cue_end(cues, end_index),
                    confidence=round(min(confidence, 1.0), CONFIDENCE_PRECISION),
                    detector_version=self.version,
                )
            )
        return tuple(segments)


@dataclass(frozen=True)
class ScoredDetector:
    """Placeholder for a learned classifier: a fixed-weight logistic score per cue."""

    threshold: float = 0.6
    phrase_weight: float = 2.2
    url_weight: float = 1.4
    discount_weight: float = 1.6
    call_to_action_weight: float = 0.8
    bias: float = -2.0
    phrases: tuple[str, ...] = SPONSOR_PHRASES
    version: str = "scored/0"

    def score(self, text: str) -> float:
        lowered = text.lower()
        phrase_hits = sum(1 for phrase in self.phrases if phrase in lowered)
        logit = (
            self.bias
            + self.phrase_weight * phrase_hits
            + self.url_weight * bool(_URL_RE.search(text))
            + self.discount_weight * bool(_PERCENT_OFF_RE.search(text))
            + self.call_to_action_weight * bool(_CALL_TO_ACTION_RE.search(text))
        )
        return 1.0 / (1.0 + math.exp(-logit))

    def detect(self, transcript: Transcript) -> tuple[AdSegment, ...]:
        cues = validate_transcript(transcript)
        scores = [self.score(cue.text) for cue in cues]

        segments: list[AdSegment] = []
        run: list[int] = []
        for index in range(len(cues) + 1):
            if index < len(cues) and scores[index] >= self.threshold:
                run.append(index)
                continue
            if run:
                confidence = sum(scores[i] for i in run) / len(run)
                segments.append(
                    AdSegment(
                        start=cues[run[0]].start,
                        end=_cue_end(cues, run[-1]),
                        confidence=round(confidence, CONFIDENCE_PRECISION),
                        detector_version=self.version,
                    )
                )
                run = []
        return tuple(segments)


def build_detector(settings: Settings) -> AdDetector:
    """Return the detector variant selected by configuration."""

    if settings.detector == "scored":
        return ScoredDetector()
    return KeywordGapDetector(silence_gap_seconds=settings.silence_gap_seconds)


__all__ = [
    "AdDetector",
    "KeywordGapDetector",
    "ScoredDetector",
    "build_detector",
    "validate_transcript",
]
