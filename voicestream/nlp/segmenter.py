"""
voicestream/nlp/segmenter.py
=============================
Segmentation Engine — VoiceStream

Responsibility:
    - Hold the session's single pending transcript buffer
    - Decide when the buffer is sealed into a TranscriptionSegment
    - Keep the sealed segments (ordered, non-overlapping) and their stats
    - Score text quality (complexity, readability, completeness)

Seal conditions (buffer must be non-empty; any one suffices):
    1. sentence count ≥ max_sentences_per_segment
    2. pending duration ≥ max_segment_duration
    3. sustained silence was observed
    4. the accumulation guard requested a seal
    5. estimated lines (chars / 60 + newlines) ≥ max_lines_per_segment
       and the last sentence is complete

With defer_seal=True the engine only reports the reason; the caller
translates the pending text and seals through seal_pending(). A segment
carries a translation only when it was made from the segment's exact text.

All times are seconds from session start.

This module does NOT:
    - Filter or normalize text (handled by normalizer.py)
    - Translate (handled by translator.py)
    - Emit events (the session does)
"""

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field, replace

from voicestream.config import StreamingConfig
from voicestream.nlp.normalizer import SENTENCE_MARKERS, split_sentences

logger = logging.getLogger("voicestream.nlp.segmenter")

_CHARS_PER_LINE: int = 60
_IDEAL_WORDS_PER_SENTENCE: int = 15


@dataclass(frozen=True)
class TranscriptionSegment:
    id: str
    start_time: float
    end_time: float
    text: str
    translation: str
    speaker: str = "unknown"
    confidence: float = 0.9
    word_count: int = 0
    is_complete: bool = False
    is_final: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_time": round(self.start_time, 3),
            "end_time": round(self.end_time, 3),
            "text": self.text,
            "translation": self.translation,
            "speaker": self.speaker,
            "confidence": round(self.confidence, 4),
            "word_count": self.word_count,
            "is_complete": self.is_complete,
            "is_final": self.is_final,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class PendingTranscriptBuffer:
    """
    Snapshot of the pending text.

    ``revision`` increases on every text change, ``generation`` on every
    reset. A translation is accepted only for the current generation and a
    revision no older than the one already stored.
    """
    text: str = ""
    translation: str = ""
    translated_source: str = ""
    translated_revision: int = -1
    sentences: tuple[str, ...] = ()
    word_count: int = 0
    start_time: float = 0.0
    last_update_time: float = 0.0
    revision: int = 0
    generation: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "translation": self.translation,
            "translated_source": self.translated_source,
            "sentence_count": len(self.sentences),
            "word_count": self.word_count,
            "start_time": round(self.start_time, 3),
            "last_update_time": round(self.last_update_time, 3),
            "generation": self.generation,
        }


@dataclass(frozen=True)
class SegmentationResult:
    new_segment: TranscriptionSegment | None
    buffer_snapshot: PendingTranscriptBuffer
    seal_reason: str | None = None


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def detect_sentences(text: str) -> list[str]:
    """Sentence split (Latin and CJK markers); a trailing fragment counts."""
    return split_sentences(text)


def is_text_complete(text: str) -> bool:
    """True when the last sentence ends in a sentence marker."""
    sentences = detect_sentences(text)
    return bool(sentences) and sentences[-1][-1] in SENTENCE_MARKERS


def estimate_lines(text: str) -> int:
    return math.ceil(len(text) / _CHARS_PER_LINE) + text.count("\n")


def analyze_text_quality(text: str) -> dict:
    """
    Heuristic text quality.

    Returns:
        Dict with keys complexity, readability, completeness (0..1 floats)
        and quality ("high" | "medium" | "low").
    """
    words = text.split()
    sentences = detect_sentences(text)

    if not words or not sentences:
        complexity = 0.0
    else:
        avg_sentence_len = len(words) / len(sentences)
        long_word_ratio = sum(1 for w in words if len(w) > 6) / len(words)
        complexity = (min(avg_sentence_len / 20.0, 1.0) + long_word_ratio) / 2.0

    avg_words = len(words) / len(sentences) if sentences else 0.0
    readability = min(1.0, max(0.0, 1.0 - (avg_words - _IDEAL_WORDS_PER_SENTENCE) / 20.0))

    complete = sum(1 for s in sentences if s[-1] in SENTENCE_MARKERS)
    completeness = complete / len(sentences) if sentences else 0.0

    overall = (complexity + readability + completeness) / 3.0
    if overall >= 0.7:
        quality = "high"
    elif overall >= 0.4:
        quality = "medium"
    else:
        quality = "low"

    return {
        "complexity": complexity,
        "readability": readability,
        "completeness": completeness,
        "quality": quality,
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SegmentationEngine:
    """Pending buffer + seal policy + sealed segment store."""

    def __init__(self, config: StreamingConfig | None = None) -> None:
        self._config = config or StreamingConfig()
        self._lock = threading.RLock()
        self._segments: list[TranscriptionSegment] = []
        self._buffer = PendingTranscriptBuffer()

    # ---- buffer updates --------------------------------------------------

    def process_update(
        self,
        text: str,
        translation: str | None,
        now: float,
        *,
        confidence: float = 0.9,
        speaker: str = "unknown",
        silence_detected: bool = False,
        seal_requested: bool = False,
        defer_seal: bool = False,
    ) -> SegmentationResult:
        """
        Replace the pending text with *text* and evaluate the seal conditions.

        Args:
            text:             Full pending text (not a delta).
            translation:      New translation of *text*, or None to keep the
                              stored one.
            now:              Seconds from session start.
            confidence:       Recognition confidence for the segment.
            speaker:          Speaker label for the segment.
            silence_detected: Sustained silence was observed.
            seal_requested:   The accumulation guard asked for a seal.
            defer_seal:       Report the seal reason but leave the buffer
                              pending; the caller seals with seal_pending().

        Returns:
            SegmentationResult with the sealed segment (or None), a snapshot
            of the buffer after the update and the seal reason, if any.
        """
        with self._lock:
            buf = self._buffer
            if text != buf.text:
                start = now if buf.is_empty else buf.start_time
                sentences = tuple(detect_sentences(text))
                buf = replace(
                    buf,
                    text=text,
                    sentences=sentences,
                    word_count=len(text.split()),
                    start_time=start,
                    revision=buf.revision + 1,
                )
            if translation is not None:
                buf = replace(
                    buf,
                    translation=translation,
                    translated_source=text,
                    translated_revision=buf.revision,
                )
            self._buffer = replace(buf, last_update_time=now)

            reason = self._seal_reason(now, silence_detected, seal_requested)
            if reason is None:
                return SegmentationResult(None, self._buffer)
            if defer_seal:
                return SegmentationResult(None, self._buffer, reason)

            logger.info("Sealing segment (%s).", reason)
            segment = self._seal(now, confidence, speaker, is_final=False)
            return SegmentationResult(segment, self._buffer, reason)

    def update_translation(
        self,
        translation: str,
        source_text: str,
        generation: int,
        revision: int,
    ) -> bool:
        """
        Store a translation that completed asynchronously.

        Returns False (and stores nothing) when the buffer was sealed since
        the request (generation changed) or a newer translation is stored.
        """
        with self._lock:
            buf = self._buffer
            if generation != buf.generation or revision < buf.translated_revision:
                logger.debug(
                    "Discarding stale translation (generation %d/%d, revision %d/%d).",
                    generation, buf.generation, revision, buf.translated_revision,
                )
                return False
            self._buffer = replace(
                buf,
                translation=translation,
                translated_source=source_text,
                translated_revision=revision,
            )
            return True

    def seal_pending(
        self,
        now: float,
        generation: int,
        *,
        translation: str | None = None,
        source_text: str | None = None,
        confidence: float = 0.9,
        speaker: str = "unknown",
        reason: str = "requested",
    ) -> TranscriptionSegment | None:
        """
        Seal the pending buffer after a deferred seal decision.

        *translation* is attached when *source_text* is still the pending
        text. Returns None when the buffer is empty or was already sealed
        (generation changed).
        """
        with self._lock:
            if self._buffer.is_empty or self._buffer.generation != generation:
                return None
            self._attach_translation(translation, source_text)
            logger.info("Sealing segment (%s).", reason)
            return self._seal(now, confidence, speaker, is_final=False)

    def finalize_pending(
        self,
        now: float,
        confidence: float = 0.9,
        speaker: str = "unknown",
        *,
        translation: str | None = None,
        source_text: str | None = None,
    ) -> TranscriptionSegment | None:
        """Seal a non-empty buffer as a final segment (used on stop)."""
        with self._lock:
            if self._buffer.is_empty:
                return None
            self._attach_translation(translation, source_text)
            logger.info("Finalizing pending segment.")
            return self._seal(now, confidence, speaker, is_final=True)

    def clear(self) -> None:
        """Drop all segments and the pending buffer."""
        with self._lock:
            self._segments = []
            self._buffer = PendingTranscriptBuffer(generation=self._buffer.generation + 1)

    # ---- queries ---------------------------------------------------------

    def buffer_snapshot(self) -> PendingTranscriptBuffer:
        with self._lock:
            return self._buffer

    def get_all_segments(self) -> list[TranscriptionSegment]:
        with self._lock:
            return list(self._segments)

    def get_stats(self) -> dict:
        with self._lock:
            segments = list(self._segments)
        total = len(segments)
        total_duration = sum(s.duration for s in segments)
        total_words = sum(s.word_count for s in segments)
        return {
            "total_segments": total,
            "total_duration": total_duration,
            "average_segment_duration": total_duration / total if total else 0.0,
            "completed_segments": sum(1 for s in segments if s.is_complete),
            "total_words": total_words,
            "average_words_per_segment": total_words / total if total else 0.0,
        }

    def detect_sentences(self, text: str) -> list[str]:
        return detect_sentences(text)

    def analyze_text_quality(self, text: str) -> dict:
        return analyze_text_quality(text)

    # ---- internals -------------------------------------------------------

    def _seal_reason(self, now: float, silence_detected: bool, seal_requested: bool) -> str | None:
        buf = self._buffer
        cfg = self._config
        if buf.is_empty:
            return None
        if len(buf.sentences) >= cfg.max_sentences_per_segment:
            return "max_sentences"
        if now - buf.start_time >= cfg.max_segment_duration:
            return "max_duration"
        if silence_detected:
            return "silence"
        if seal_requested:
            return "requested"
        if estimate_lines(buf.text) >= cfg.max_lines_per_segment and is_text_complete(buf.text):
            return "max_lines"
        return None

    def _attach_translation(self, translation: str | None, source_text: str | None) -> None:
        # Caller holds self._lock.
        buf = self._buffer
        if translation is None or source_text != buf.text:
            return
        self._buffer = replace(
            buf,
            translation=translation,
            translated_source=source_text,
            translated_revision=buf.revision,
        )

    def _seal(self, now: float, confidence: float, speaker: str, *, is_final: bool) -> TranscriptionSegment:
        # Caller holds self._lock and has checked the buffer is non-empty.
        buf = self._buffer
        previous_end = self._segments[-1].end_time if self._segments else 0.0
        start = max(buf.start_time, previous_end)
        end = max(now, start)
        text = buf.text.strip()
        # A translation of an earlier revision does not describe this text.
        translation = buf.translation.strip() if buf.translated_source == buf.text else ""

        segment = TranscriptionSegment(
            id=f"segment-{uuid.uuid4().hex[:12]}",
            start_time=start,
            end_time=end,
            text=text,
            translation=translation,
            speaker=speaker or "unknown",
            confidence=confidence,
            word_count=len(text.split()),
            is_complete=is_text_complete(text),
            is_final=is_final,
        )
        self._segments.append(segment)
        self._buffer = PendingTranscriptBuffer(generation=buf.generation + 1)
        logger.info(
            "Segment %s sealed: %.1fs–%.1fs, %d words, complete=%s.",
            segment.id, segment.start_time, segment.end_time,
            segment.word_count, segment.is_complete,
        )
        return segment
