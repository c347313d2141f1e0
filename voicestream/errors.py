"""
voicestream/errors.py
======================
Error Taxonomy — VoiceStream

Responsibility:
    - Define every exception raised across the streaming pipeline
    - Separate session-fatal failures (no audio source at all) from
      chunk-local failures (one recognition / translation / encoding call)

Only AcquisitionError raised from StreamingSession.start() is fatal to a
session. Everything else is local to a single chunk and is logged, counted
and (for systemic conditions) surfaced as an ``error`` event.
"""


class VoiceStreamError(Exception):
    """Base class for all VoiceStream errors."""
    pass


# ---------------------------------------------------------------------------
# Audio acquisition
# ---------------------------------------------------------------------------


class AcquisitionError(VoiceStreamError):
    """
    Raised when an audio source cannot be acquired.

    Raised directly by StreamingSession.start() when *zero* sources could
    be acquired; ``failures`` maps each source kind to its failure message.
    """

    def __init__(self, message: str, failures: dict[str, str] | None = None) -> None:
        self.message = message
        self.failures = dict(failures or {})
        super().__init__(message)


class PermissionDenied(AcquisitionError):
    """The platform refused access to the capture device."""
    pass


class DeviceUnavailable(AcquisitionError):
    """The capture device does not exist or could not be opened."""
    pass


# ---------------------------------------------------------------------------
# Chunk-local failures
# ---------------------------------------------------------------------------


class EncodingError(VoiceStreamError):
    """Raised internally by the encoder; never escapes encode()."""
    pass


class RecognitionError(VoiceStreamError):
    """A speech-to-text call failed for one chunk."""
    pass


class TranscriptionTimeout(RecognitionError):
    """The speech-to-text call exceeded its timeout."""
    pass


class RateLimited(RecognitionError):
    """The speech-to-text provider answered HTTP 429."""
    pass


class RequestRejected(RecognitionError):
    """The provider rejected the request (HTTP 4xx other than 429)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TranslationError(VoiceStreamError):
    """
    A translation call failed for one chunk.

    ``reason`` is one of: "timeout", "rate_limited", "rejected", "failed".
    """

    def __init__(
        self,
        message: str,
        reason: str = "failed",
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.reason = reason
        self.status_code = status_code
        super().__init__(message)


class HallucinationDetected(VoiceStreamError):
    """Recognizer output matched a hallucination pattern (never raised to callers)."""

    def __init__(self, pattern: str, text: str) -> None:
        self.pattern = pattern
        self.text = text
        super().__init__(f"Hallucination pattern '{pattern}' matched: {text[:80]!r}")


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


class MissingCredentials(VoiceStreamError, RuntimeError):
    """No API key is configured for a provider client (OPENAI_API_KEY unset)."""
    pass


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class SchedulerStateError(VoiceStreamError):
    """An illegal scheduler state transition was requested."""
    pass
