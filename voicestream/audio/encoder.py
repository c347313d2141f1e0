"""
voicestream/audio/encoder.py
=============================
PCM-to-Container Encoder — VoiceStream

Responsibility:
    - Pack a window of float PCM samples into a self-contained 16-bit WAV
      container that the recognition service accepts
    - Never raise: a bad chunk degrades to its untouched source bytes or to
      a minimal valid empty WAV, so one chunk cannot stall the stream
    - Decode WAV bytes back to float32 (quality analysis, tests)

This module does NOT:
    - Resample or mix audio (handled by the mixer)
    - Decide when to flush audio (handled by the scheduler)
"""

import io
import logging
import struct
import wave
from typing import Sequence

import numpy as np

from voicestream.errors import EncodingError

logger = logging.getLogger("voicestream.audio.encoder")

WAV_MIME_TYPE = "audio/wav"
WAV_HEADER_BYTES = 44
DEFAULT_SAMPLE_RATE = 16000
_SAMPLE_WIDTH = 2  # bytes, 16-bit PCM


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def encode(
    samples: np.ndarray | Sequence[float] | bytes,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channels: int = 1,
) -> bytes:
    """
    Encode PCM samples as a WAV byte buffer.

    Args:
        samples:     Float samples in [-1.0, 1.0] (interleaved when
                     channels > 1; a 2-D (frames, channels) array is also
                     accepted), or raw bytes. Raw bytes that already carry a
                     RIFF header are returned untouched; other bytes are
                     treated as little-endian PCM16.
        sample_rate: Samples per second per channel.
        channels:    Channel count.

    Returns:
        A decodable WAV container. Zero-length input yields a valid empty
        WAV (header only).
    """
    try:
        return _encode_wav(samples, sample_rate, channels)
    except Exception as exc:
        logger.warning("WAV encoding failed (%s) — falling back.", exc)

    if isinstance(samples, (bytes, bytearray)) and len(samples) > 0:
        logger.info("Re-emitting %d untouched source bytes.", len(samples))
        return bytes(samples)

    safe_rate = sample_rate if isinstance(sample_rate, int) and sample_rate > 0 else DEFAULT_SAMPLE_RATE
    safe_channels = channels if isinstance(channels, int) and channels > 0 else 1
    logger.info("Emitting empty WAV container.")
    return empty_wav(safe_rate, safe_channels)


def empty_wav(sample_rate: int = DEFAULT_SAMPLE_RATE, channels: int = 1) -> bytes:
    """A minimal valid WAV container with no frames."""
    block_align = channels * _SAMPLE_WIDTH
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36,
        b"WAVE",
        b"fmt ",
        16,
        1,  # PCM
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        _SAMPLE_WIDTH * 8,
        b"data",
        0,
    )


def decode_wav(audio_bytes: bytes) -> tuple[np.ndarray, int, int]:
    """
    Convert WAV bytes to float32 samples normalized to [-1.0, 1.0].

    Returns:
        (samples, sample_rate, channels) — samples are interleaved.

    Raises:
        EncodingError: If the bytes are not a readable WAV container.
    """
    try:
        buf = io.BytesIO(audio_bytes)
        with wave.open(buf, "rb") as wf:
            n_frames = wf.getnframes()
            sampwidth = wf.getsampwidth()
            sample_rate = wf.getframerate()
            channels = wf.getnchannels()
            raw_pcm = wf.readframes(n_frames)
    except Exception as exc:
        raise EncodingError(f"Failed to read WAV audio: {exc}") from exc

    dtype_map = {1: np.int8, 2: np.int16, 4: np.int32}
    np_dtype = dtype_map.get(sampwidth, np.int16)
    pcm = np.frombuffer(raw_pcm, dtype=np_dtype).astype(np.float32)

    norm_map = {1: 128.0, 2: 32768.0, 4: 2147483648.0}
    pcm = pcm / norm_map.get(sampwidth, 32768.0)
    return pcm, sample_rate, channels


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _encode_wav(samples, sample_rate: int, channels: int) -> bytes:
    if not isinstance(sample_rate, int) or sample_rate <= 0:
        raise EncodingError(f"Invalid sample rate: {sample_rate!r}")
    if not isinstance(channels, int) or channels <= 0:
        raise EncodingError(f"Invalid channel count: {channels!r}")

    if isinstance(samples, (bytes, bytearray)):
        if bytes(samples[:4]) == b"RIFF":
            return bytes(samples)
        if len(samples) % (_SAMPLE_WIDTH * channels) != 0:
            raise EncodingError("Raw PCM16 byte length is not frame-aligned.")
        pcm16 = bytes(samples)
    else:
        pcm16 = _float_to_pcm16(samples, channels)

    return _frames_to_wav(pcm16, channels, _SAMPLE_WIDTH, sample_rate)


def _float_to_pcm16(samples, channels: int) -> bytes:
    arr = np.asarray(samples, dtype=np.float32)
    if arr.ndim > 1:
        arr = arr.reshape(-1)
    if arr.size % channels != 0:
        raise EncodingError("Sample count is not a multiple of the channel count.")
    if arr.size and not np.all(np.isfinite(arr)):
        raise EncodingError("Samples contain NaN or infinite values.")

    clipped = np.clip(arr, -1.0, 1.0)
    # Asymmetric scaling keeps -1.0 → -32768 and 1.0 → 32767.
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype("<i2").tobytes()


def _frames_to_wav(
    raw_pcm: bytes,
    n_channels: int,
    sampwidth: int,
    sample_rate: int,
) -> bytes:
    """Wrap raw PCM frames into a standalone WAV byte buffer."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(n_channels)
        wf.setsampwidth(sampwidth)
        wf.setframerate(sample_rate)
        wf.writeframes(raw_pcm)
    return buf.getvalue()
