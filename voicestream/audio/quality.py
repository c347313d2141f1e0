"""
voicestream/audio/quality.py
=============================
Audio Quality Monitor — VoiceStream

Responsibility:
    - Sample the most recent mixed audio every tick (default 500 ms)
    - Derive volume and clarity from a byte-scaled FFT magnitude spectrum
    - Combine them into a quality score in [0.1, 1.0]
    - Keep a rolling window of samples for the scheduler and status

Quality is advisory only: it lengthens or shortens the scheduler interval
and feeds the ``audio_quality_update`` event. It never gates capture.

This module does NOT:
    - Capture or mix audio
    - Decide when chunks are flushed
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger("voicestream.audio.quality")


# ---------------------------------------------------------------------------
# Spectrum scaling (matches a browser AnalyserNode's byte frequency data)
# ---------------------------------------------------------------------------

_MIN_DECIBELS: float = -100.0
_MAX_DECIBELS: float = -30.0

_VOLUME_WEIGHT: float = 0.7
_CLARITY_WEIGHT: float = 0.3

MIN_SCORE: float = 0.1
MAX_SCORE: float = 1.0


@dataclass(frozen=True)
class QualitySample:
    volume: float
    clarity: float
    score: float
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "volume": round(self.volume, 4),
            "clarity": round(self.clarity, 4),
            "score": round(self.score, 4),
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def byte_frequency_data(samples: np.ndarray, fft_size: int = 256) -> np.ndarray:
    """
    Byte-scaled magnitude spectrum of the last *fft_size* samples.

    Returns ``fft_size // 2`` bins, each in 0..255, where 0 corresponds to
    -100 dB and 255 to -30 dB. Short input is zero-padded at the front.
    """
    window = np.zeros(fft_size, dtype=np.float32)
    tail = np.asarray(samples, dtype=np.float32)[-fft_size:]
    if tail.size:
        window[fft_size - tail.size:] = tail

    windowed = window * np.hanning(fft_size).astype(np.float32)
    magnitude = np.abs(np.fft.rfft(windowed))[: fft_size // 2] / fft_size

    with np.errstate(divide="ignore"):
        decibels = 20.0 * np.log10(np.maximum(magnitude, 1e-12))

    scaled = (decibels - _MIN_DECIBELS) / (_MAX_DECIBELS - _MIN_DECIBELS) * 255.0
    return np.clip(scaled, 0.0, 255.0)


def analyze_samples(samples: np.ndarray, fft_size: int = 256, now: float | None = None) -> QualitySample:
    """
    Compute a QualitySample from raw float samples.

    volume  = mean(bins) / 255
    clarity = sum(upper half of bins) / (n_upper * 255)
    score   = clamp(0.7 * volume + 0.3 * clarity, 0.1, 1.0)

    Silent input gives volume = clarity = 0 and the floor score 0.1.
    """
    bins = byte_frequency_data(samples, fft_size)
    n = bins.size
    volume = float(np.mean(bins) / 255.0) if n else 0.0

    upper = bins[n // 2:]
    clarity = float(np.sum(upper) / (upper.size * 255.0)) if upper.size else 0.0

    score = _VOLUME_WEIGHT * volume + _CLARITY_WEIGHT * clarity
    score = min(MAX_SCORE, max(MIN_SCORE, score))

    return QualitySample(
        volume=volume,
        clarity=clarity,
        score=score,
        timestamp=time.time() if now is None else now,
    )


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class QualityMonitor:
    """Throttled sampler with a rolling window of QualitySamples."""

    def __init__(self, tick_ms: int = 500, window: int = 20, fft_size: int = 256) -> None:
        self._tick = tick_ms / 1000.0
        self._fft_size = fft_size
        self._samples: deque[QualitySample] = deque(maxlen=window)
        self._last_tick: float | None = None
        self._paused = False
        self._lock = threading.Lock()

    def maybe_sample(self, samples: np.ndarray, now: float) -> QualitySample | None:
        """
        Analyze *samples* if at least one tick elapsed since the previous
        sample. Returns the new sample, or None when throttled or paused.
        """
        with self._lock:
            if self._paused:
                return None
            if self._last_tick is not None and now - self._last_tick < self._tick:
                return None
            self._last_tick = now

        sample = analyze_samples(samples, self._fft_size)
        with self._lock:
            self._samples.append(sample)
        logger.debug(
            "Quality sample: volume=%.3f clarity=%.3f score=%.3f",
            sample.volume, sample.clarity, sample.score,
        )
        return sample

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._last_tick = None

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._last_tick = None

    @property
    def latest(self) -> QualitySample | None:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def average_score(self, default: float = 0.5) -> float:
        """Mean score over the rolling window, or *default* when empty."""
        with self._lock:
            if not self._samples:
                return default
            return sum(s.score for s in self._samples) / len(self._samples)

    def history(self) -> list[QualitySample]:
        with self._lock:
            return list(self._samples)
