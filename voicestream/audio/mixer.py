"""
voicestream/audio/mixer.py
===========================
Audio Mixer — VoiceStream

Responsibility:
    - Combine the blocks of all active sources into one mono stream with
      per-source gains (primary 0.8, secondary 0.6 by default)
    - Append each mixed block to the shared AudioBuffer
    - Report each mixed block's level to the silence tracker and offer it
      to the quality monitor

The mixer is clocked by the highest-priority active source: when that
source delivers a block, every other source contributes whatever samples
it has pending (zero-padded). Secondary backlog is bounded to one second.

Only the scheduler cycle drains or clears the AudioBuffer; capture
callbacks only ever append to it.

This module does NOT:
    - Open devices (handled by voicestream/audio/sources.py)
    - Encode audio (handled by voicestream/audio/encoder.py)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np

from voicestream.audio.quality import QualityMonitor, QualitySample
from voicestream.audio.sources import AudioSourceManager, SourceKind

logger = logging.getLogger("voicestream.audio.mixer")


@dataclass(frozen=True)
class PCMWindow:
    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / (self.sample_rate * self.channels)

    def __len__(self) -> int:
        return len(self.samples)


def mix(blocks: list[np.ndarray], gains: list[float]) -> np.ndarray:
    """
    Weighted sum of *blocks*, zero-padded to the longest, clipped to [-1, 1].

    Raises:
        ValueError: If blocks and gains differ in length.
    """
    if len(blocks) != len(gains):
        raise ValueError("blocks and gains must have the same length")
    if not blocks:
        return np.zeros(0, dtype=np.float32)

    length = max(len(b) for b in blocks)
    out = np.zeros(length, dtype=np.float32)
    for block, gain in zip(blocks, gains):
        block = np.asarray(block, dtype=np.float32)
        out[: block.size] += block * gain
    return np.clip(out, -1.0, 1.0)


def block_level(block: np.ndarray) -> float:
    """Mean absolute amplitude; 0.0 for an empty block."""
    if len(block) == 0:
        return 0.0
    return float(np.mean(np.abs(block)))


# ---------------------------------------------------------------------------
# Shared buffer
# ---------------------------------------------------------------------------


class AudioBuffer:
    """Append-only PCM accumulator drained by the scheduler cycle."""

    def __init__(self, sample_rate: int = 16000, channels: int = 1) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._blocks: list[np.ndarray] = []
        self._count = 0
        self._lock = threading.Lock()

    def append(self, block: np.ndarray) -> None:
        if len(block) == 0:
            return
        with self._lock:
            self._blocks.append(np.asarray(block, dtype=np.float32))
            self._count += len(block)

    def drain(self) -> PCMWindow:
        """Take everything accumulated so far, leaving the buffer empty."""
        with self._lock:
            blocks, self._blocks = self._blocks, []
            self._count = 0
        samples = np.concatenate(blocks) if blocks else np.zeros(0, dtype=np.float32)
        return PCMWindow(samples=samples, sample_rate=self.sample_rate, channels=self.channels)

    def clear(self) -> None:
        with self._lock:
            self._blocks = []
            self._count = 0

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._count

    @property
    def duration(self) -> float:
        return self.sample_count / float(self.sample_rate * self.channels)


# ---------------------------------------------------------------------------
# Mixer
# ---------------------------------------------------------------------------


class AudioMixer:
    """Capture sink: mixes source blocks and fans them out downstream."""

    def __init__(
        self,
        source_manager: AudioSourceManager,
        buffer: AudioBuffer,
        silence_tracker,
        quality_monitor: QualityMonitor,
        gains: dict[SourceKind, float] | None = None,
        on_quality: Callable[[QualitySample], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sources = source_manager
        self._buffer = buffer
        self._silence = silence_tracker
        self._quality = quality_monitor
        self._gains = gains or {SourceKind.PRIMARY: 0.8, SourceKind.SECONDARY: 0.6}
        self._on_quality = on_quality
        self._clock = clock
        self._pending: dict[SourceKind, list[np.ndarray]] = {k: [] for k in SourceKind}
        self._max_backlog = buffer.sample_rate  # one second per source
        self._paused = False
        self._lock = threading.Lock()

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            self._clear_pending()

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def reset(self) -> None:
        with self._lock:
            self._clear_pending()

    def on_block(self, kind: SourceKind, block: np.ndarray) -> None:
        """Capture callback entry point (runs on the backend's thread)."""
        with self._lock:
            if self._paused:
                return

        self._sources.update_quality(kind, min(1.0, block_level(block) * 10.0))

        active = [s.kind for s in self._sources.active_sources()]
        if not active:
            return
        clock_kind = active[0]

        with self._lock:
            if kind != clock_kind:
                self._queue(kind, block)
                return
            blocks = [block]
            gains = [self._gains.get(kind, 1.0)]
            for other in active[1:]:
                blocks.append(self._take(other, len(block)))
                gains.append(self._gains.get(other, 1.0))

        mixed = mix(blocks, gains)
        self._emit(mixed)

    # ---- internals -------------------------------------------------------

    def _emit(self, mixed: np.ndarray) -> None:
        now = self._clock()
        self._buffer.append(mixed)
        self._silence.update(block_level(mixed), now)
        sample = self._quality.maybe_sample(mixed, now)
        if sample is not None and self._on_quality is not None:
            self._on_quality(sample)

    def _queue(self, kind: SourceKind, block: np.ndarray) -> None:
        queue = self._pending[kind]
        queue.append(np.asarray(block, dtype=np.float32))
        total = sum(len(b) for b in queue)
        while queue and total > self._max_backlog:
            total -= len(queue.pop(0))

    def _take(self, kind: SourceKind, count: int) -> np.ndarray:
        queue = self._pending[kind]
        if not queue:
            return np.zeros(0, dtype=np.float32)
        joined = np.concatenate(queue)
        taken, rest = joined[:count], joined[count:]
        self._pending[kind] = [rest] if rest.size else []
        return taken

    def _clear_pending(self) -> None:
        for kind in self._pending:
            self._pending[kind] = []
