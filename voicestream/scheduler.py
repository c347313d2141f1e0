"""
voicestream/scheduler.py
=========================
Adaptive Chunk Scheduler — VoiceStream

Responsibility:
    - Decide when buffered audio is flushed to recognition
    - Adapt the flush interval to audio quality and the silence ratio
    - Back off after a rate-limited cycle
    - Track silence (start, sustained silence, accumulated duration)

State machine::

    IDLE → SCHEDULED → PROCESSING → SCHEDULED … → STOPPED
           SCHEDULED ↔ PAUSED

Interval formula::

    interval = clamp(base * q_mult * s_mult, min, max)
    q_mult   = 1.3 if quality > 0.8, 0.7 if quality < 0.3, else 1.0
    s_mult   = 1.5 if silence_ratio > 0.7, 0.8 if silence_ratio < 0.2, else 1.0

The loop runs on one worker thread and the next wait starts only after the
current cycle returns, so cycles never overlap.

This module does NOT:
    - Touch audio, text or the network (the cycle callback does)
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from voicestream.config import StreamingConfig
from voicestream.errors import SchedulerStateError

logger = logging.getLogger("voicestream.scheduler")

# Silence ratio is meaningless right after start.
_WARMUP_SECONDS: float = 5.0
_WARMUP_SILENCE_RATIO: float = 0.5


class SchedulerPhase(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PAUSED = "paused"
    STOPPED = "stopped"


_TRANSITIONS: dict[SchedulerPhase, set[SchedulerPhase]] = {
    SchedulerPhase.IDLE: {SchedulerPhase.SCHEDULED, SchedulerPhase.STOPPED},
    SchedulerPhase.SCHEDULED: {
        SchedulerPhase.PROCESSING,
        SchedulerPhase.PAUSED,
        SchedulerPhase.STOPPED,
    },
    SchedulerPhase.PROCESSING: {
        SchedulerPhase.SCHEDULED,
        SchedulerPhase.PAUSED,
        SchedulerPhase.STOPPED,
    },
    SchedulerPhase.PAUSED: {SchedulerPhase.SCHEDULED, SchedulerPhase.STOPPED},
    SchedulerPhase.STOPPED: set(),
}


@dataclass(frozen=True)
class CycleOutcome:
    """What one cycle reports back to the scheduler."""
    rate_limited: bool = False
    text_produced: bool = False


@dataclass(frozen=True)
class SchedulerState:
    interval_ms: int
    silence_start: float | None
    is_silent: bool
    silence_duration: float
    elapsed: float

    def to_dict(self) -> dict:
        return {
            "interval_ms": self.interval_ms,
            "silence_start": self.silence_start,
            "is_silent": self.is_silent,
            "silence_duration": round(self.silence_duration, 3),
            "elapsed": round(self.elapsed, 3),
        }


# ---------------------------------------------------------------------------
# Interval computation
# ---------------------------------------------------------------------------


def compute_interval(
    base_ms: int,
    quality: float,
    silence_ratio: float,
    min_ms: int = 1000,
    max_ms: int = 5000,
) -> int:
    """Adaptive flush interval in milliseconds, clamped to [min_ms, max_ms]."""
    if quality > 0.8:
        quality_mult = 1.3
    elif quality < 0.3:
        quality_mult = 0.7
    else:
        quality_mult = 1.0

    if silence_ratio > 0.7:
        silence_mult = 1.5
    elif silence_ratio < 0.2:
        silence_mult = 0.8
    else:
        silence_mult = 1.0

    interval = base_ms * quality_mult * silence_mult
    return int(round(min(max_ms, max(min_ms, interval))))


# ---------------------------------------------------------------------------
# Silence tracking
# ---------------------------------------------------------------------------


class SilenceTracker:
    """
    Level-driven silence detector.

    A block whose mean absolute level is below *threshold* is silent.
    Silence is "sustained" once it has lasted at least *min_silence_ms*.
    """

    def __init__(self, threshold: float = 0.01, min_silence_ms: int = 1000) -> None:
        self.threshold = threshold
        self.min_silence = min_silence_ms / 1000.0
        self._lock = threading.Lock()
        self._recording_start: float | None = None
        self._silence_start: float | None = None
        self._accumulated = 0.0
        self._last_level = 0.0

    def start(self, now: float) -> None:
        with self._lock:
            self._recording_start = now
            self._silence_start = None
            self._accumulated = 0.0

    def update(self, level: float, now: float) -> None:
        with self._lock:
            self._last_level = level
            if level < self.threshold:
                if self._silence_start is None:
                    self._silence_start = now
            elif self._silence_start is not None:
                self._accumulated += max(0.0, now - self._silence_start)
                self._silence_start = None

    @property
    def is_silent(self) -> bool:
        with self._lock:
            return self._silence_start is not None

    @property
    def silence_start(self) -> float | None:
        with self._lock:
            return self._silence_start

    def recent_silence(self, now: float) -> bool:
        """True if the current silence has lasted at least min_silence_ms."""
        with self._lock:
            return (
                self._silence_start is not None
                and now - self._silence_start >= self.min_silence
            )

    def silence_duration(self, now: float) -> float:
        """Total silence since start(), including the current silent run."""
        with self._lock:
            total = self._accumulated
            if self._silence_start is not None:
                total += max(0.0, now - self._silence_start)
            return total

    def elapsed(self, now: float) -> float:
        with self._lock:
            if self._recording_start is None:
                return 0.0
            return max(0.0, now - self._recording_start)

    def silence_ratio(self, now: float) -> float:
        elapsed = self.elapsed(now)
        if elapsed < _WARMUP_SECONDS:
            return _WARMUP_SILENCE_RATIO
        return min(1.0, self.silence_duration(now) / elapsed)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class AdaptiveChunkScheduler:
    """Runs *cycle* on a worker thread at an adaptive interval."""

    def __init__(
        self,
        cycle: Callable[[], CycleOutcome | None],
        silence: SilenceTracker,
        quality: Callable[[], float],
        config: StreamingConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cycle = cycle
        self._silence = silence
        self._quality = quality
        self._config = config or StreamingConfig()
        self._clock = clock

        self._phase = SchedulerPhase.IDLE
        self._cond = threading.Condition()
        self._cycle_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._interval_ms = self._config.base_interval_ms

    # ---- state -----------------------------------------------------------

    @property
    def phase(self) -> SchedulerPhase:
        with self._cond:
            return self._phase

    @property
    def interval_ms(self) -> int:
        with self._cond:
            return self._interval_ms

    def state(self) -> SchedulerState:
        now = self._clock()
        return SchedulerState(
            interval_ms=self.interval_ms,
            silence_start=self._silence.silence_start,
            is_silent=self._silence.is_silent,
            silence_duration=self._silence.silence_duration(now),
            elapsed=self._silence.elapsed(now),
        )

    def _transition(self, target: SchedulerPhase) -> None:
        # Caller holds self._cond.
        if target not in _TRANSITIONS[self._phase]:
            raise SchedulerStateError(
                f"Illegal scheduler transition {self._phase.value} → {target.value}"
            )
        logger.debug("Scheduler %s → %s", self._phase.value, target.value)
        self._phase = target
        self._cond.notify_all()

    # ---- control ---------------------------------------------------------

    def start(self) -> None:
        with self._cond:
            self._transition(SchedulerPhase.SCHEDULED)
            self._interval_ms = self._config.base_interval_ms
        self._silence.start(self._clock())
        self._thread = threading.Thread(
            target=self._loop, name="voicestream-scheduler", daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler started (base interval %d ms).", self._interval_ms)

    def pause(self) -> None:
        with self._cond:
            self._transition(SchedulerPhase.PAUSED)
        logger.info("Scheduler paused.")

    def resume(self) -> None:
        with self._cond:
            if self._phase != SchedulerPhase.PAUSED:
                raise SchedulerStateError(
                    f"Cannot resume scheduler from {self._phase.value}"
                )
            self._transition(SchedulerPhase.SCHEDULED)
        logger.info("Scheduler resumed.")

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the loop and join the worker. Safe to call repeatedly."""
        with self._cond:
            if self._phase == SchedulerPhase.STOPPED:
                return
            self._transition(SchedulerPhase.STOPPED)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Scheduler worker did not finish within %.1fs.", timeout)
        logger.info("Scheduler stopped.")

    def run_once(self) -> CycleOutcome:
        """
        Execute exactly one cycle synchronously and update the interval.

        Raises:
            SchedulerStateError: If the scheduler has been stopped.
        """
        if self.phase == SchedulerPhase.STOPPED:
            raise SchedulerStateError("Scheduler is stopped.")
        return self._execute_cycle()

    # ---- worker ----------------------------------------------------------

    def _loop(self) -> None:
        while True:
            with self._cond:
                deadline = self._clock() + self._interval_ms / 1000.0
                while True:
                    if self._phase == SchedulerPhase.STOPPED:
                        return
                    if self._phase == SchedulerPhase.PAUSED:
                        self._cond.wait()
                        deadline = self._clock() + self._interval_ms / 1000.0
                        continue
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                self._transition(SchedulerPhase.PROCESSING)

            self._execute_cycle()

            with self._cond:
                if self._phase == SchedulerPhase.PROCESSING:
                    self._transition(SchedulerPhase.SCHEDULED)

    def _execute_cycle(self) -> CycleOutcome:
        with self._cycle_lock:
            try:
                outcome = self._cycle() or CycleOutcome()
            except Exception as exc:
                logger.error("Scheduler cycle failed: %s", exc, exc_info=True)
                outcome = CycleOutcome()
            self._update_interval(outcome)
            return outcome

    def _update_interval(self, outcome: CycleOutcome) -> None:
        cfg = self._config
        now = self._clock()
        interval = compute_interval(
            cfg.base_interval_ms,
            self._quality(),
            self._silence.silence_ratio(now),
            cfg.min_interval_ms,
            cfg.max_interval_ms,
        )
        with self._cond:
            if outcome.rate_limited:
                interval = min(
                    max(interval, self._interval_ms) * 2,
                    cfg.rate_limit_max_interval_ms,
                )
                logger.warning("Rate limited — next interval lengthened to %d ms.", interval)
            self._interval_ms = interval
