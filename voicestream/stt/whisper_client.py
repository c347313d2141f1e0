"""
voicestream/stt/whisper_client.py
==================================
OpenAI Whisper Recognition Client — VoiceStream

Responsibility:
    - Transcribe one WAV chunk with the OpenAI Whisper API
    - Skip chunks too small to contain speech
    - Serve repeated chunks from a bounded content-hash cache and suppress
      identical requests already in flight
    - Discard hallucinated or low-confidence output
    - Map provider failures to typed RecognitionError subclasses

Every outcome that produces no text carries an explicit RecognitionStatus,
so callers can tell "nothing was said" from "the provider was not asked".

This module does NOT:
    - Normalize or accumulate text (handled by voicestream/nlp/)
    - Decide when chunks are sent (handled by the scheduler)
"""

import io
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from voicestream.cache import BoundedCache, InFlightTracker, content_hash
from voicestream.config import StreamingConfig
from voicestream.errors import (
    HallucinationDetected,
    MissingCredentials,
    RateLimited,
    RecognitionError,
    RequestRejected,
    TranscriptionTimeout,
)
from voicestream.openai_retry import call_with_retry, is_rate_limit, is_timeout, status_code_of
from voicestream.stt.hallucination import detect_hallucination

logger = logging.getLogger("voicestream.stt.whisper_client")

# Confidence reported when the provider returns no per-segment data.
DEFAULT_CONFIDENCE: float = 0.9


class RecognitionStatus(str, Enum):
    SUCCESS = "success"
    CACHED = "cached"
    DUPLICATE = "duplicate"
    TOO_SMALL = "too_small"
    FILTERED = "filtered"
    LOW_CONFIDENCE = "low_confidence"
    EMPTY = "empty"


@dataclass(frozen=True)
class RecognizedSegment:
    text: str
    start: float
    end: float
    avg_logprob: float | None = None
    no_speech_prob: float | None = None


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    confidence: float
    status: RecognitionStatus
    segments: list[RecognizedSegment] = field(default_factory=list)
    language: str | None = None

    @property
    def has_text(self) -> bool:
        return bool(self.text)


def _empty(status: RecognitionStatus, language: str | None = None) -> TranscriptionResult:
    return TranscriptionResult(text="", confidence=0.0, status=status, language=language)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RecognitionClient:
    """
    Whisper client with per-instance cache and in-flight tracking.

    Args:
        client: An ``openai.OpenAI`` instance. Created lazily from
                OPENAI_API_KEY when omitted.
        config: Streaming configuration (model, timeout, thresholds).
    """

    def __init__(self, client: Any = None, config: StreamingConfig | None = None) -> None:
        self._client = client
        self._config = config or StreamingConfig()
        self._cache = BoundedCache(self._config.cache_size, name="recognition-cache")
        self._in_flight = InFlightTracker()
        self._client_lock = threading.Lock()
        self._counts: dict[str, int] = {s.value: 0 for s in RecognitionStatus}
        self._counts["requests"] = 0
        self._counts["errors"] = 0
        self._counts_lock = threading.Lock()

    # ---- public API ------------------------------------------------------

    def transcribe(
        self,
        audio_bytes: bytes,
        *,
        language: str | None = None,
        prompt: str | None = None,
    ) -> TranscriptionResult:
        """
        Transcribe one WAV chunk.

        Args:
            audio_bytes: WAV container bytes.
            language:    ISO-639-1 hint passed to Whisper.
            prompt:      Optional context prompt (e.g. the previous text).

        Returns:
            TranscriptionResult; empty text with an explicit status when
            the chunk was skipped, deduplicated or discarded.

        Raises:
            TranscriptionTimeout: The call exceeded the configured timeout.
            RateLimited:          The provider answered HTTP 429.
            RequestRejected:      Any other 4xx.
            RecognitionError:     5xx / connection errors after retries.
            MissingCredentials:   OPENAI_API_KEY is not set.
        """
        if len(audio_bytes) < self._config.min_audio_bytes:
            logger.debug("Audio chunk too small (%d bytes) — skipping.", len(audio_bytes))
            return self._count(_empty(RecognitionStatus.TOO_SMALL))

        key = content_hash(audio_bytes)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Recognition cache hit %s.", key[:12])
            return self._count(self._interpret(cached, cached_hit=True))

        if not self._in_flight.claim(key):
            logger.info("Identical audio chunk already in flight — skipping.")
            return self._count(_empty(RecognitionStatus.DUPLICATE))

        try:
            raw = self._request(audio_bytes, language=language, prompt=prompt)
        finally:
            self._in_flight.release(key)

        self._cache.put(key, raw)
        return self._count(self._interpret(raw, cached_hit=False))

    def clear_cache(self) -> None:
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        with self._counts_lock:
            counts = dict(self._counts)
        return {**counts, "cache": self._cache.stats()}

    # ---- provider call ---------------------------------------------------

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                api_key = os.environ.get("OPENAI_API_KEY")
                if not api_key:
                    raise MissingCredentials("OPENAI_API_KEY environment variable is not set.")
                from openai import OpenAI

                self._client = OpenAI(api_key=api_key)
            return self._client

    def _request(self, audio_bytes: bytes, *, language: str | None, prompt: str | None) -> dict:
        client = self._get_client()

        audio_file = io.BytesIO(audio_bytes)
        audio_file.name = "audio.wav"

        kwargs: dict[str, Any] = {
            "model": self._config.recognition_model,
            "file": audio_file,
            "response_format": "verbose_json",
            "temperature": 0,
            "timeout": self._config.recognition_timeout,
        }
        if language:
            kwargs["language"] = language
        prompt = prompt or self._config.recognition_prompt
        if prompt:
            kwargs["prompt"] = prompt

        with self._counts_lock:
            self._counts["requests"] += 1

        try:
            response = call_with_retry(client.audio.transcriptions.create, **kwargs)
        except Exception as exc:
            with self._counts_lock:
                self._counts["errors"] += 1
            raise _classify_error(exc) from exc

        return _response_to_dict(response)

    # ---- interpretation --------------------------------------------------

    def _interpret(self, raw: dict, *, cached_hit: bool) -> TranscriptionResult:
        """Apply filters and confidence mapping to a provider response."""
        text = raw["text"].strip()
        language = raw.get("language")
        segments = [RecognizedSegment(**s) for s in raw.get("segments", [])]

        if not text:
            return _empty(RecognitionStatus.CACHED if cached_hit else RecognitionStatus.EMPTY, language)

        pattern = detect_hallucination(text, self._config.repetition_ratio_threshold)
        if pattern is not None:
            logger.info("%s", HallucinationDetected(pattern, text))
            return _empty(RecognitionStatus.CACHED if cached_hit else RecognitionStatus.FILTERED, language)

        confidence = compute_confidence(segments)
        if confidence < self._config.min_confidence:
            logger.info(
                "Discarding low-confidence text (%.2f < %.2f): %r",
                confidence, self._config.min_confidence, text[:80],
            )
            return _empty(
                RecognitionStatus.CACHED if cached_hit else RecognitionStatus.LOW_CONFIDENCE,
                language,
            )

        return TranscriptionResult(
            text=text,
            confidence=confidence,
            status=RecognitionStatus.CACHED if cached_hit else RecognitionStatus.SUCCESS,
            segments=segments,
            language=language,
        )

    def _count(self, result: TranscriptionResult) -> TranscriptionResult:
        with self._counts_lock:
            self._counts[result.status.value] += 1
        return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def compute_confidence(segments: list[RecognizedSegment]) -> float:
    """
    Mean over segments of exp(avg_logprob), each scaled by
    (1 - no_speech_prob) when present. Clamped to [0, 1].

    Returns DEFAULT_CONFIDENCE when no segment carries avg_logprob.
    """
    scores = []
    for seg in segments:
        if seg.avg_logprob is None:
            continue
        score = math.exp(min(0.0, seg.avg_logprob))
        if seg.no_speech_prob is not None:
            score *= 1.0 - min(1.0, max(0.0, seg.no_speech_prob))
        scores.append(score)

    if not scores:
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, sum(scores) / len(scores)))


def _classify_error(exc: Exception) -> RecognitionError:
    if is_timeout(exc):
        return TranscriptionTimeout(f"Whisper transcription timed out: {exc}")
    if is_rate_limit(exc):
        return RateLimited(f"Whisper rate limit reached: {exc}")
    code = status_code_of(exc)
    if code is not None and 400 <= code < 500:
        return RequestRejected(f"Whisper rejected the request ({code}): {exc}", status_code=code)
    return RecognitionError(f"Whisper transcription failed: {exc}")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # Handle both dict and object attribute access patterns
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _response_to_dict(response: Any) -> dict:
    """Flatten an SDK response (object, dict or plain string) for caching."""
    if isinstance(response, str):
        return {"text": response, "segments": [], "language": None}

    segments = []
    for seg in _field(response, "segments") or []:
        segments.append({
            "text": str(_field(seg, "text", "") or "").strip(),
            "start": float(_field(seg, "start", 0.0) or 0.0),
            "end": float(_field(seg, "end", 0.0) or 0.0),
            "avg_logprob": _optional_float(_field(seg, "avg_logprob")),
            "no_speech_prob": _optional_float(_field(seg, "no_speech_prob")),
        })

    return {
        "text": str(_field(response, "text", "") or ""),
        "segments": segments,
        "language": _field(response, "language"),
    }
