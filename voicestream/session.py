"""
voicestream/session.py
=======================
Streaming Session — VoiceStream

Responsibility (control surface):
    - start / pause / resume / stop one live transcription session
    - toggle the secondary (system audio) source while running
    - expose status and the sealed segments

Per-cycle flow (run on the scheduler worker thread):
    1. Drain the shared audio buffer
    2. Encode the PCM window as WAV
    3. Recognize (outside the session lock)
    4. Normalize and pass the accumulation guard
    5. Update the pending buffer → ``transcription_update``
    6. Schedule a debounced translation → ``translation_update``
    7. Evaluate the seal conditions; when one holds, translate the whole
       pending text first, then seal → ``segment_created``

Failure policy:
    - Only start() with zero acquirable sources raises (AcquisitionError).
    - Every other failure is local to one chunk: logged, counted, and
      surfaced as an ``error`` event only for systemic conditions
      (repeated rate limits, rejected credentials, repeated translation
      failures).
    - Results that return after stop(), or after the pending buffer was
      sealed, are discarded.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable

from voicestream.audio.encoder import encode
from voicestream.audio.mixer import AudioBuffer, AudioMixer
from voicestream.audio.quality import QualityMonitor, QualitySample
from voicestream.audio.sources import AudioSourceManager, SourceKind
from voicestream.config import StreamingConfig
from voicestream.errors import (
    AcquisitionError,
    MissingCredentials,
    RateLimited,
    RecognitionError,
    RequestRejected,
    SchedulerStateError,
    TranscriptionTimeout,
    TranslationError,
)
from voicestream.events import (
    AudioQualityUpdate,
    AudioSourceChanged,
    ErrorOccurred,
    EventBus,
    EventType,
    SegmentCreated,
    TranscriptionUpdate,
    TranslationUpdate,
)
from voicestream.log_buffer import RingBufferHandler
from voicestream.nlp.normalizer import append_text, check_accumulation, normalize_text
from voicestream.nlp.segmenter import PendingTranscriptBuffer, SegmentationEngine, TranscriptionSegment
from voicestream.nlp.translator import (
    TranslationClient,
    TranslationDebouncer,
    TranslationResult,
    TranslationStatus,
)
from voicestream.scheduler import AdaptiveChunkScheduler, CycleOutcome, SilenceTracker
from voicestream.stt.whisper_client import RecognitionClient

logger = logging.getLogger("voicestream.session")

_AUTH_STATUS_CODES: tuple[int, ...] = (401, 403)
_MIN_TRANSLATABLE_CHARS: int = 3
_STATUS_LOG_ENTRIES: int = 20


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


PendingEvent = tuple[EventType, Any]


class StreamingSession:
    """
    One live capture → transcript → translation → segment session.

    Collaborators are injectable; omitted ones are built from *config*.
    *clock* is a monotonic seconds source (segment times are relative to
    the moment start() succeeded).
    """

    def __init__(
        self,
        config: StreamingConfig | None = None,
        source_manager: AudioSourceManager | None = None,
        recognizer: RecognitionClient | None = None,
        translator: TranslationClient | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        log_buffer: RingBufferHandler | None = None,
    ) -> None:
        self.config = config or StreamingConfig.from_env()
        self.events = event_bus or EventBus()
        cfg = self.config

        self._clock = clock
        self._log_buffer = log_buffer
        self._sources = source_manager or AudioSourceManager(config=cfg)
        self._recognizer = recognizer or RecognitionClient(config=cfg)
        self._translator = translator or TranslationClient(config=cfg)
        self._segmenter = SegmentationEngine(cfg)

        self._audio = AudioBuffer(cfg.sample_rate, cfg.channels)
        self._silence = SilenceTracker(cfg.silence_threshold, cfg.silence_duration_ms)
        self._quality = QualityMonitor(cfg.quality_tick_ms, cfg.quality_window, cfg.fft_size)
        self._mixer = AudioMixer(
            self._sources,
            self._audio,
            self._silence,
            self._quality,
            gains={SourceKind.PRIMARY: cfg.primary_gain, SourceKind.SECONDARY: cfg.secondary_gain},
            on_quality=self._on_quality_sample,
            clock=clock,
        )
        self._scheduler = AdaptiveChunkScheduler(
            self.run_cycle,
            self._silence,
            self._current_quality,
            config=cfg,
            clock=clock,
        )
        self._debouncer = TranslationDebouncer(cfg.translation_delay_ms / 1000.0, self._run_translation)

        self._lock = threading.RLock()
        # One translation call at a time (debounced or pre-seal).
        self._translation_lock = threading.Lock()
        self._state = SessionState.IDLE
        self._started_at: float | None = None
        self._secondary_enabled = cfg.enable_secondary_source
        self._last_confidence = 0.9

        self._consecutive_rate_limits = 0
        self._consecutive_translation_failures = 0
        self._auth_error_reported = False

    # =====================================================================
    # Control surface
    # =====================================================================

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def start(self) -> None:
        """
        Acquire sources and start the scheduler.

        Raises:
            AcquisitionError:    No source could be acquired. No
                                 ``audio_source_changed`` is emitted.
            SchedulerStateError: The session was already started.
        """
        with self._lock:
            if self._state != SessionState.IDLE:
                raise SchedulerStateError(f"Session cannot start from state {self._state.value}")

            kinds = [SourceKind.PRIMARY]
            if self._secondary_enabled:
                kinds.append(SourceKind.SECONDARY)

            self._sources.set_sink(self._mixer.on_block)
            try:
                self._sources.acquire_all(kinds)
            except AcquisitionError as exc:
                self._sources.set_sink(None)
                logger.error("Session start failed: %s (%s)", exc.message, exc.failures)
                raise

            self._started_at = self._clock()
            self._state = SessionState.RUNNING
            sources = self._sources.describe()

        self._publish(EventType.AUDIO_SOURCE_CHANGED, AudioSourceChanged(sources=sources))
        self._scheduler.start()
        logger.info("Session started with sources: %s", [s["kind"] for s in sources if s["is_active"]])

    def pause(self) -> None:
        """Stop flushing and sampling; keep sources open. No-op unless running."""
        with self._lock:
            if self._state != SessionState.RUNNING:
                logger.info("Pause ignored in state %s.", self._state.value)
                return
            self._state = SessionState.PAUSED
            self._mixer.pause()
            self._quality.pause()
            self._scheduler.pause()
        logger.info("Session paused.")

    def resume(self) -> None:
        """Resume a paused session. No-op unless paused."""
        with self._lock:
            if self._state != SessionState.PAUSED:
                logger.info("Resume ignored in state %s.", self._state.value)
                return
            self._state = SessionState.RUNNING
            self._mixer.resume()
            self._quality.resume()
            self._scheduler.resume()
        logger.info("Session resumed.")

    def stop(self) -> None:
        """
        Stop the session. Safe to call any number of times.

        Joins the scheduler, cancels pending translation, translates and
        seals the pending buffer as a final segment, releases every source
        and clears buffers.
        """
        with self._lock:
            if self._state == SessionState.STOPPED:
                return
            was_started = self._state != SessionState.IDLE
            self._state = SessionState.STOPPED

        self._scheduler.stop()
        self._debouncer.cancel()

        if not was_started:
            logger.info("Session stopped before start.")
            return

        self._sources.set_sink(None)
        self._sources.release_all()

        buffer = self._segmenter.buffer_snapshot()
        translation = self._translate_for_seal(buffer, surface_errors=False)

        pending: list[PendingEvent] = []
        with self._lock:
            segment = self._segmenter.finalize_pending(
                self._elapsed(),
                self._last_confidence,
                translation=translation,
                source_text=buffer.text,
            )
            if segment is not None:
                pending.append(self._segment_event(segment))
            self._audio.clear()
            self._mixer.reset()
            self._quality.reset()
            pending.append(
                (EventType.AUDIO_SOURCE_CHANGED, AudioSourceChanged(sources=self._sources.describe()))
            )

        self._publish_all(pending)
        logger.info("Session stopped (%d segments).", len(self._segmenter.get_all_segments()))

    def toggle_secondary_source(self, enabled: bool) -> bool:
        """
        Enable or disable the secondary source.

        Before start() this only records the preference. While running, the
        source is acquired or released immediately; an acquisition failure
        is logged and reflected in the ``audio_source_changed`` payload.

        Returns:
            Whether the secondary source is active afterwards (or, before
            start, whether it will be requested).
        """
        with self._lock:
            self._secondary_enabled = bool(enabled)
            live = self._state in (SessionState.RUNNING, SessionState.PAUSED)
        if not live:
            return self._secondary_enabled

        if enabled:
            try:
                self._sources.acquire(SourceKind.SECONDARY)
            except AcquisitionError as exc:
                logger.warning("Secondary source unavailable: %s", exc.message)
        else:
            self._sources.release(SourceKind.SECONDARY)

        self._publish(EventType.AUDIO_SOURCE_CHANGED, AudioSourceChanged(sources=self._sources.describe()))
        return self._sources.is_active(SourceKind.SECONDARY)

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            elapsed = self._elapsed() if self._started_at is not None else 0.0
            buffer = self._segmenter.buffer_snapshot()

        latest = self._quality.latest
        status: dict[str, Any] = {
            "state": state.value,
            "elapsed": round(elapsed, 3),
            "secondary_enabled": self._secondary_enabled,
            "sources": self._sources.describe(),
            "scheduler": {"phase": self._scheduler.phase.value, **self._scheduler.state().to_dict()},
            "audio_quality": latest.to_dict() if latest else None,
            "buffered_audio_seconds": round(self._audio.duration, 3),
            "pending": buffer.to_dict(),
            "segments": self._segmenter.get_stats(),
            "recognition": self._recognizer.stats(),
            "translation_usage": self._translator.get_usage_stats(),
        }
        if self._log_buffer is not None:
            status["recent_logs"] = [e.to_dict() for e in self._log_buffer.recent(_STATUS_LOG_ENTRIES)]
        return status

    def get_all_segments(self) -> list[TranscriptionSegment]:
        return self._segmenter.get_all_segments()

    def flush_translation(self) -> bool:
        """Run a pending debounced translation now, on the calling thread."""
        return self._debouncer.flush()

    def detect_available_sources(self) -> dict:
        return self._sources.detect_available_sources()

    # =====================================================================
    # Scheduler cycle
    # =====================================================================

    def run_cycle(self) -> CycleOutcome:
        """One drain → encode → recognize → accumulate → segment pass."""
        with self._lock:
            if self._state != SessionState.RUNNING:
                return CycleOutcome()
            generation = self._segmenter.buffer_snapshot().generation

        window = self._audio.drain()
        silence = self._silence.recent_silence(self._clock())

        if len(window) == 0:
            reason = self._pending_seal_reason(silence)
            if reason is not None:
                self._seal_pending(reason)
            return CycleOutcome()

        audio_bytes = encode(window.samples, window.sample_rate, window.channels)

        try:
            result = self._recognizer.transcribe(audio_bytes, language=self.config.source_language)
        except RateLimited as exc:
            logger.warning("Recognition rate limited: %s", exc)
            self._note_rate_limit()
            return CycleOutcome(rate_limited=True)
        except RequestRejected as exc:
            logger.error("Recognition request rejected (%s): %s", exc.status_code, exc)
            if exc.status_code in _AUTH_STATUS_CODES:
                self._report_auth_failure(f"Provider rejected the credentials: {exc}")
            return CycleOutcome()
        except TranscriptionTimeout as exc:
            logger.warning("Recognition timed out — chunk dropped: %s", exc)
            return CycleOutcome()
        except RecognitionError as exc:
            logger.error("Recognition failed — chunk dropped: %s", exc)
            return CycleOutcome()
        except MissingCredentials as exc:
            logger.error("Recognition unavailable: %s", exc)
            self._report_auth_failure(f"Recognition is not configured: {exc}")
            return CycleOutcome()

        with self._lock:
            self._consecutive_rate_limits = 0
            self._auth_error_reported = False

        text = normalize_text(result.text, self.config.max_text_chars)

        pending: list[PendingEvent] = []
        seal_reason: str | None = None
        schedule_translation = False
        with self._lock:
            if self._state == SessionState.STOPPED:
                logger.info("Discarding recognition result returned after stop.")
                return CycleOutcome()
            buffer = self._segmenter.buffer_snapshot()
            if buffer.generation != generation:
                logger.info("Discarding recognition result for a sealed buffer.")
                return CycleOutcome()

            if not text:
                seal_reason = self._pending_seal_reason(silence)
            else:
                decision = check_accumulation(
                    buffer.text, text, self.config.accumulation_repetition_threshold,
                )
                if decision.accepted:
                    self._last_confidence = result.confidence
                    combined = append_text(buffer.text, text)
                    update = self._segmenter.process_update(
                        combined,
                        None,
                        self._elapsed(),
                        confidence=result.confidence,
                        silence_detected=silence,
                        defer_seal=True,
                    )
                    pending.append((
                        EventType.TRANSCRIPTION_UPDATE,
                        TranscriptionUpdate(text=combined, confidence=result.confidence, timestamp=time.time()),
                    ))
                    seal_reason = update.seal_reason
                    schedule_translation = seal_reason is None and len(combined.strip()) > _MIN_TRANSLATABLE_CHARS
                else:
                    logger.info("Chunk not accumulated (%s): %r", decision.reason, text[:80])
                    seal_reason = self._pending_seal_reason(silence, seal_requested=decision.suggest_seal)

        self._publish_all(pending)
        if seal_reason is not None:
            self._seal_pending(seal_reason)
        elif schedule_translation:
            self._debouncer.schedule()
        return CycleOutcome(text_produced=bool(text))

    def _pending_seal_reason(self, silence: bool, seal_requested: bool = False) -> str | None:
        """Re-check seal conditions without new text (silence, duration, guard)."""
        with self._lock:
            buffer = self._segmenter.buffer_snapshot()
            if buffer.is_empty:
                return None
            update = self._segmenter.process_update(
                buffer.text,
                None,
                self._elapsed(),
                confidence=self._last_confidence,
                silence_detected=silence,
                seal_requested=seal_requested,
                defer_seal=True,
            )
            return update.seal_reason

    def _seal_pending(self, reason: str) -> None:
        """Translate the whole pending text, then seal it as one segment."""
        self._debouncer.cancel()
        with self._lock:
            if self._state == SessionState.STOPPED:
                return
            buffer = self._segmenter.buffer_snapshot()

        translation = self._translate_for_seal(buffer)

        pending: list[PendingEvent] = []
        with self._lock:
            if self._state == SessionState.STOPPED:
                logger.info("Session stopped before the seal; stop() finalizes the pending text.")
                return
            segment = self._segmenter.seal_pending(
                self._elapsed(),
                buffer.generation,
                translation=translation,
                source_text=buffer.text,
                confidence=self._last_confidence,
                reason=reason,
            )
            if segment is None:
                return
            self._audio.clear()
            if translation is not None and translation != buffer.translation:
                pending.append((
                    EventType.TRANSLATION_UPDATE,
                    TranslationUpdate(text=buffer.text, translation=translation, timestamp=time.time()),
                ))
            pending.append(self._segment_event(segment))

        self._publish_all(pending)

    def _segment_event(self, segment: TranscriptionSegment) -> PendingEvent:
        stats = self._segmenter.get_stats()
        return (
            EventType.SEGMENT_CREATED,
            SegmentCreated(segment=segment, total_segments=stats["total_segments"], stats=stats),
        )

    # =====================================================================
    # Translation
    # =====================================================================

    def _run_translation(self) -> None:
        """Debounced: translate the current pending text if it changed."""
        with self._lock:
            if self._state == SessionState.STOPPED:
                return
            buffer = self._segmenter.buffer_snapshot()
            text = buffer.text
            if len(text.strip()) <= _MIN_TRANSLATABLE_CHARS or buffer.translated_source == text:
                return
            generation, revision = buffer.generation, buffer.revision

        result = self._request_translation(text)
        if result is None:
            return

        with self._lock:
            if self._state == SessionState.STOPPED:
                logger.info("Discarding translation returned after stop.")
                return
            if not self._segmenter.update_translation(result.translated_text, text, generation, revision):
                return

        self._publish(
            EventType.TRANSLATION_UPDATE,
            TranslationUpdate(text=text, translation=result.translated_text, timestamp=time.time()),
        )

    def _translate_for_seal(
        self,
        buffer: PendingTranscriptBuffer,
        surface_errors: bool = True,
    ) -> str | None:
        """
        Translation of the full pending text, for the segment about to seal.

        Returns None when there is nothing to translate or the call failed;
        the segment is then sealed without a translation.
        """
        text = buffer.text
        if buffer.translated_source == text:
            return buffer.translation
        if len(text.strip()) <= _MIN_TRANSLATABLE_CHARS:
            return None
        result = self._request_translation(text, surface_errors=surface_errors)
        return result.translated_text if result is not None else None

    def _request_translation(self, text: str, surface_errors: bool = True) -> TranslationResult | None:
        """Translate *text*; failures are logged and counted, never raised."""
        try:
            with self._translation_lock:
                result = self._translator.translate(
                    text, self.config.source_language, self.config.target_language,
                )
        except TranslationError as exc:
            logger.warning("Translation failed (%s): %s", exc.reason, exc.message)
            if surface_errors:
                self._note_translation_failure(exc)
            return None
        except MissingCredentials as exc:
            logger.error("Translation unavailable: %s", exc)
            if surface_errors:
                self._report_auth_failure(f"Translation is not configured: {exc}")
            return None

        with self._lock:
            self._consecutive_translation_failures = 0

        if result.status in (TranslationStatus.DUPLICATE, TranslationStatus.EMPTY):
            logger.debug("No translation update (%s).", result.status.value)
            return None
        return result

    # =====================================================================
    # Systemic error surfacing
    # =====================================================================

    def _note_rate_limit(self) -> None:
        with self._lock:
            self._consecutive_rate_limits += 1
            count = self._consecutive_rate_limits
        if count == self.config.systemic_failure_threshold:
            self._publish(
                EventType.ERROR,
                ErrorOccurred(message=f"Recognition service rate limited {count} times in a row; slowing down."),
            )

    def _note_translation_failure(self, exc: TranslationError) -> None:
        if exc.status_code in _AUTH_STATUS_CODES:
            self._report_auth_failure(f"Provider rejected the credentials: {exc.message}")
            return
        with self._lock:
            self._consecutive_translation_failures += 1
            count = self._consecutive_translation_failures
        if count == self.config.systemic_failure_threshold:
            self._publish(
                EventType.ERROR,
                ErrorOccurred(message=f"Translation failed {count} times in a row ({exc.reason})."),
            )

    def _report_auth_failure(self, message: str) -> None:
        with self._lock:
            if self._auth_error_reported:
                return
            self._auth_error_reported = True
        self._publish(EventType.ERROR, ErrorOccurred(message=message))

    # =====================================================================
    # Helpers
    # =====================================================================

    def _on_quality_sample(self, sample: QualitySample) -> None:
        self._publish(EventType.AUDIO_QUALITY_UPDATE, AudioQualityUpdate(metrics=sample))

    def _current_quality(self) -> float:
        latest = self._quality.latest
        return latest.score if latest is not None else 0.5

    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(0.0, self._clock() - self._started_at)

    def _publish(self, event_type: EventType, payload: Any) -> None:
        self.events.publish(event_type, payload)

    def _publish_all(self, events: list[PendingEvent]) -> None:
        for event_type, payload in events:
            self.events.publish(event_type, payload)
