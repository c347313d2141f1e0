"""
voicestream/openai_retry.py
============================
Shared OpenAI call wrapper — VoiceStream

Provides a thin wrapper around any OpenAI SDK ``create`` method that retries
transient server failures (5xx, dropped connections) with exponential
back-off, plus the helpers the clients use to classify the exceptions that
are NOT retried here.

Rate limits (429) and timeouts are deliberately not retried: in a live
stream the scheduler lengthens its next interval instead, and a timed-out
chunk is stale by the time a retry would finish.

Usage::

    from voicestream.openai_retry import call_with_retry

    response = call_with_retry(
        client.audio.transcriptions.create,
        model="whisper-1",
        file=("audio.wav", wav_bytes, "audio/wav"),
    )

This module does NOT:
    - Create or manage OpenAI client instances
    - Map exceptions to VoiceStream error types (each client does that)
"""

import logging
import time
from typing import Any, Callable

logger = logging.getLogger("voicestream.openai_retry")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_RETRIES: int = 2          # total attempts = MAX_RETRIES + 1 (initial)
BASE_DELAY: float = 0.5       # seconds — first back-off delay
MAX_DELAY: float = 4.0        # a live stream cannot wait long
BACKOFF_FACTOR: float = 2.0   # exponential multiplier

_RETRYABLE_STATUS_CODES: set[int] = {500, 502, 503, 504}


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def status_code_of(exc: Exception) -> int | None:
    """Return the HTTP status code carried by an OpenAI exception, if any."""
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def is_timeout(exc: Exception) -> bool:
    """True for SDK / transport timeouts."""
    exc_type = type(exc).__name__
    if exc_type in ("APITimeoutError", "TimeoutException", "ReadTimeout", "TimeoutError"):
        return True
    return isinstance(exc, TimeoutError)


def is_rate_limit(exc: Exception) -> bool:
    """True for HTTP 429 / openai.RateLimitError."""
    return type(exc).__name__ == "RateLimitError" or status_code_of(exc) == 429


def is_retryable(exc: Exception) -> bool:
    """Return True if the exception is a transient server or connection error."""
    if is_timeout(exc) or is_rate_limit(exc):
        return False

    if type(exc).__name__ in ("APIConnectionError", "ConnectError", "RemoteProtocolError"):
        return True

    code = status_code_of(exc)
    if code is not None:
        return code in _RETRYABLE_STATUS_CODES

    return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def call_with_retry(create: Callable[..., Any], **kwargs: Any) -> Any:
    """
    Call ``create(**kwargs)`` with automatic retry on transient failures.

    Args:
        create:   A bound OpenAI SDK method, e.g.
                  ``client.chat.completions.create``.
        **kwargs: Passed straight through to ``create``.

    Returns:
        Whatever ``create`` returns.

    Raises:
        The original exception when it is not retryable, or the last
        exception once all retries are exhausted.
    """
    last_exc: Exception | None = None
    delay = BASE_DELAY

    for attempt in range(MAX_RETRIES + 1):
        try:
            return create(**kwargs)
        except Exception as exc:
            last_exc = exc

            if not is_retryable(exc):
                raise

            if attempt < MAX_RETRIES:
                logger.warning(
                    "OpenAI call failed (attempt %d/%d): %s — retrying in %.1fs",
                    attempt + 1,
                    MAX_RETRIES + 1,
                    exc,
                    delay,
                )
                time.sleep(delay)
                delay = min(delay * BACKOFF_FACTOR, MAX_DELAY)
            else:
                logger.error(
                    "OpenAI call failed after %d attempts: %s",
                    MAX_RETRIES + 1,
                    exc,
                )

    raise last_exc  # type: ignore[misc]
