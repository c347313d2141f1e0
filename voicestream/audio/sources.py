"""
voicestream/audio/sources.py
=============================
Audio Source Manager — VoiceStream

Responsibility:
    - Acquire and release the ``primary`` (microphone) and ``secondary``
      (system / loopback) capture sources through a capture backend
    - Track per-source activity, rolling quality and last acquisition error
    - Probe which sources are available and recommend a setup
    - Route captured blocks to a single sink (the mixer)

Partial acquisition is acceptable: acquire_all() only fails when *no*
source could be opened. Each live capture handle is held exclusively by
this manager while the source is active.

This module does NOT:
    - Mix audio (handled by voicestream/audio/mixer.py)
    - Emit events (the session does, from describe())
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

import numpy as np

from voicestream.config import StreamingConfig
from voicestream.errors import AcquisitionError, DeviceUnavailable, PermissionDenied

logger = logging.getLogger("voicestream.audio.sources")

SampleCallback = Callable[[np.ndarray], None]
SampleSink = Callable[["SourceKind", np.ndarray], None]

_QUALITY_SMOOTHING: float = 0.8
_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


class SourceKind(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


# Mixer clock priority: the first active kind in this order drives mixing.
SOURCE_PRIORITY: tuple[SourceKind, ...] = (SourceKind.PRIMARY, SourceKind.SECONDARY)


@dataclass
class AudioSource:
    kind: SourceKind
    handle: Any = None
    is_active: bool = False
    quality: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "is_active": self.is_active,
            "quality": round(self.quality, 4),
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Capture backends
# ---------------------------------------------------------------------------


class CaptureBackend(Protocol):
    def open(self, kind: SourceKind, on_samples: SampleCallback) -> Any:
        """Start capturing; return an opaque handle. Raise AcquisitionError on failure."""
        ...

    def close(self, handle: Any) -> None:
        ...


class SoundDeviceBackend:
    """
    Capture through ``sounddevice.InputStream`` (float32, mono).

    The primary source uses ``primary_device`` or the default input device.
    The secondary source needs an explicit loopback / monitor device
    (``secondary_device``) and is unavailable without one.
    """

    def __init__(self, config: StreamingConfig) -> None:
        self._config = config

    def open(self, kind: SourceKind, on_samples: SampleCallback) -> Any:
        # Imported lazily: loading sounddevice requires the PortAudio library.
        import sounddevice as sd

        device = self._device_for(kind)
        if kind == SourceKind.SECONDARY and device is None:
            raise DeviceUnavailable(
                "No secondary (loopback) capture device configured "
                "(set VOICESTREAM_SECONDARY_DEVICE)."
            )

        def _callback(indata, frames, time_info, status):
            if status:
                logger.debug("%s capture status: %s", kind.value, status)
            block = np.asarray(indata, dtype=np.float32)
            if block.ndim > 1:
                block = block.mean(axis=1)
            on_samples(block.copy())

        try:
            stream = sd.InputStream(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype="float32",
                blocksize=self._config.block_size,
                device=device,
                callback=_callback,
            )
            stream.start()
        except Exception as exc:
            raise _classify_open_error(kind, exc) from exc

        logger.info("Opened %s capture stream (device=%s).", kind.value, device)
        return stream

    def close(self, handle: Any) -> None:
        handle.stop()
        handle.close()

    def _device_for(self, kind: SourceKind) -> int | str | None:
        raw = (
            self._config.primary_device
            if kind == SourceKind.PRIMARY
            else self._config.secondary_device
        )
        if raw is None:
            return None
        return int(raw) if str(raw).isdigit() else raw


def _classify_open_error(kind: SourceKind, exc: Exception) -> AcquisitionError:
    message = f"Failed to open {kind.value} source: {exc}"
    if any(marker in str(exc).lower() for marker in _PERMISSION_MARKERS):
        return PermissionDenied(message)
    return DeviceUnavailable(message)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class AudioSourceManager:
    """Owns the capture handles of all active sources."""

    def __init__(self, backend: CaptureBackend | None = None, config: StreamingConfig | None = None) -> None:
        self._config = config or StreamingConfig()
        self._backend = backend if backend is not None else SoundDeviceBackend(self._config)
        self._sources: dict[SourceKind, AudioSource] = {}
        self._last_errors: dict[SourceKind, str] = {}
        self._sink: SampleSink | None = None
        self._lock = threading.RLock()

    def set_sink(self, sink: SampleSink | None) -> None:
        """Route every captured block to *sink(kind, block)*."""
        with self._lock:
            self._sink = sink

    # ---- acquisition -----------------------------------------------------

    def acquire(self, kind: SourceKind) -> AudioSource:
        """
        Open one capture source. Returns the existing source if already active.

        Raises:
            PermissionDenied / DeviceUnavailable: On failure; the failure
            message is remembered for describe().
        """
        kind = SourceKind(kind)
        with self._lock:
            existing = self._sources.get(kind)
            if existing is not None and existing.is_active:
                return existing

        try:
            handle = self._backend.open(kind, lambda block: self._deliver(kind, block))
        except AcquisitionError as exc:
            self._record_failure(kind, exc.message)
            raise
        except Exception as exc:
            self._record_failure(kind, str(exc))
            raise DeviceUnavailable(f"Failed to open {kind.value} source: {exc}") from exc

        source = AudioSource(kind=kind, handle=handle, is_active=True)
        with self._lock:
            self._sources[kind] = source
            self._last_errors.pop(kind, None)
        logger.info("Acquired %s audio source.", kind.value)
        return source

    def release(self, source: AudioSource | SourceKind) -> None:
        """Close a source. Releasing an inactive or unknown source is a no-op."""
        kind = source.kind if isinstance(source, AudioSource) else SourceKind(source)
        with self._lock:
            current = self._sources.pop(kind, None)
        if current is None or not current.is_active:
            return

        current.is_active = False
        try:
            self._backend.close(current.handle)
        except Exception as exc:
            logger.warning("Error closing %s source: %s", kind.value, exc)
        current.handle = None
        logger.info("Released %s audio source.", kind.value)

    def acquire_all(self, kinds: list[SourceKind]) -> list[AudioSource]:
        """
        Try every requested kind. Individual failures are logged and kept.

        Raises:
            AcquisitionError: If none of the kinds could be acquired;
                              ``failures`` maps kind → message.
        """
        acquired: list[AudioSource] = []
        failures: dict[str, str] = {}
        for kind in kinds:
            try:
                acquired.append(self.acquire(kind))
            except AcquisitionError as exc:
                logger.warning("Audio source %s unavailable: %s", SourceKind(kind).value, exc.message)
                failures[SourceKind(kind).value] = exc.message

        if not acquired:
            raise AcquisitionError("No audio source could be acquired.", failures=failures)
        return acquired

    def release_all(self) -> None:
        with self._lock:
            sources = list(self._sources.values())
        for source in sources:
            self.release(source)

    # ---- queries ---------------------------------------------------------

    def active_sources(self) -> list[AudioSource]:
        """Active sources in mixer clock priority order."""
        with self._lock:
            return [
                self._sources[k]
                for k in SOURCE_PRIORITY
                if k in self._sources and self._sources[k].is_active
            ]

    def is_active(self, kind: SourceKind) -> bool:
        with self._lock:
            source = self._sources.get(SourceKind(kind))
            return source is not None and source.is_active

    def update_quality(self, kind: SourceKind, level: float) -> None:
        """Fold a per-block level (0..1) into the source's rolling quality."""
        with self._lock:
            source = self._sources.get(kind)
            if source is None:
                return
            source.quality = (
                _QUALITY_SMOOTHING * source.quality
                + (1.0 - _QUALITY_SMOOTHING) * min(1.0, max(0.0, level))
            )

    def describe(self) -> list[dict]:
        """Serializable snapshot of every known kind, active or failed."""
        with self._lock:
            out = []
            for kind in SOURCE_PRIORITY:
                source = self._sources.get(kind)
                if source is not None:
                    out.append(source.to_dict())
                elif kind in self._last_errors:
                    out.append(AudioSource(kind=kind, error=self._last_errors[kind]).to_dict())
            return out

    def detect_available_sources(self) -> dict:
        """
        Probe each kind by opening and immediately closing it.

        Kinds that are already active count as available and are not
        re-opened.
        """
        available: dict[str, bool] = {}
        for kind in SOURCE_PRIORITY:
            if self.is_active(kind):
                available[kind.value] = True
                continue
            try:
                source = self.acquire(kind)
            except AcquisitionError:
                available[kind.value] = False
                continue
            self.release(source)
            available[kind.value] = True

        primary = available[SourceKind.PRIMARY.value]
        secondary = available[SourceKind.SECONDARY.value]
        if primary and secondary:
            recommended = "primary + secondary (microphone and system audio)"
        elif primary:
            recommended = "primary only (microphone)"
        elif secondary:
            recommended = "secondary only (system audio)"
        else:
            recommended = "none (no capture device available)"

        result = {**available, "recommended_setup": recommended}
        logger.info("Audio source detection: %s", result)
        return result

    # ---- internals -------------------------------------------------------

    def _deliver(self, kind: SourceKind, block: np.ndarray) -> None:
        with self._lock:
            sink = self._sink
            active = kind in self._sources and self._sources[kind].is_active
        if sink is not None and active:
            sink(kind, block)

    def _record_failure(self, kind: SourceKind, message: str) -> None:
        with self._lock:
            self._last_errors[kind] = message
