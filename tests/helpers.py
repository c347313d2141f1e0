"""
tests/helpers.py
=================
Shared fakes for the VoiceStream tests.

    - FakeCaptureBackend: in-memory capture backend; tests push blocks
      with feed() instead of opening real devices
    - FakeClock:          manually advanced monotonic clock
    - make_recognition / make_chat_response: OpenAI-shaped responses
"""

import os
import sys
from types import SimpleNamespace

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voicestream.audio.sources import SourceKind
from voicestream.errors import DeviceUnavailable, PermissionDenied


class FakeCaptureBackend:
    """Capture backend whose sources exist only if listed in *available*."""

    def __init__(self, available=("primary", "secondary"), denied=()):
        self.available = set(available)
        self.denied = set(denied)
        self.callbacks = {}
        self.opened = []
        self.closed = []

    def open(self, kind, on_samples):
        if kind.value in self.denied:
            raise PermissionDenied(f"Permission denied for {kind.value}")
        if kind.value not in self.available:
            raise DeviceUnavailable(f"No {kind.value} device")
        self.callbacks[kind] = on_samples
        self.opened.append(kind)
        return f"handle-{kind.value}"

    def close(self, handle):
        self.closed.append(handle)

    def feed(self, kind, block):
        self.callbacks[SourceKind(kind)](np.asarray(block, dtype=np.float32))


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def speech_block(size: int = 1600, level: float = 0.2) -> np.ndarray:
    """A non-silent block (sine at *level* amplitude)."""
    t = np.arange(size, dtype=np.float32) / 16000.0
    return (level * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)


def silent_block(size: int = 1600) -> np.ndarray:
    return np.zeros(size, dtype=np.float32)


def make_recognition(text: str, avg_logprob: float | None = -0.1, no_speech_prob: float | None = 0.01):
    """A verbose_json-shaped Whisper response."""
    segments = []
    if avg_logprob is not None:
        segments.append({
            "text": text,
            "start": 0.0,
            "end": 1.0,
            "avg_logprob": avg_logprob,
            "no_speech_prob": no_speech_prob,
        })
    return SimpleNamespace(text=text, segments=segments, language="english")


def make_chat_response(content: str, prompt_tokens: int = 100, completion_tokens: int = 20):
    """A chat.completions-shaped response."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


class FakeAPIError(Exception):
    """Mimics an OpenAI APIStatusError carrying a status_code."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(FakeAPIError):
    def __init__(self, message: str = "Rate limit reached"):
        super().__init__(message, status_code=429)


class APITimeoutError(Exception):
    pass


class APIConnectionError(Exception):
    pass
