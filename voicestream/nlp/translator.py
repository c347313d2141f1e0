"""
voicestream/nlp/translator.py
==============================
Translation Client — VoiceStream

Responsibility:
    - Translate the pending transcript with OpenAI chat completions
    - Clean the source first: drop fillers, looped phrases and sentences
      that repeat an earlier one
    - Serve repeated text from a bounded cache and coalesce identical
      requests already in flight
    - Ask for a bilingual ``[SOURCE]`` / ``[TRANSLATION]`` reply and parse
      it, falling back to the raw reply
    - Track token usage and a cost estimate
    - Debounce translation requests (last write wins)

This module does NOT:
    - Decide what text is pending (handled by the session / segmenter)
    - Emit events
"""

import logging
import os
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from voicestream.cache import BoundedCache, InFlightTracker, text_hash
from voicestream.config import StreamingConfig
from voicestream.errors import MissingCredentials, TranslationError
from voicestream.nlp.normalizer import split_sentences, strip_fillers, word_overlap_similarity
from voicestream.openai_retry import call_with_retry, is_rate_limit, is_timeout, status_code_of

logger = logging.getLogger("voicestream.nlp.translator")


# ---------------------------------------------------------------------------
# Call parameters
# ---------------------------------------------------------------------------

_TEMPERATURE: float = 0.1
_MAX_TOKENS: int = 800
_PRESENCE_PENALTY: float = 0.3
_FREQUENCY_PENALTY: float = 0.5

# gpt-4o-mini list price, USD per token
_INPUT_COST_PER_TOKEN: float = 0.15 / 1_000_000
_OUTPUT_COST_PER_TOKEN: float = 0.60 / 1_000_000

_SENTENCE_SIMILARITY: float = 0.8

SOURCE_TAG = "[SOURCE]"
TRANSLATION_TAG = "[TRANSLATION]"

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "zh": "Chinese",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "ja": "Japanese",
    "ko": "Korean",
    "hi": "Hindi",
    "pt": "Portuguese",
    "ru": "Russian",
}

# A short phrase (1-4 words) looped 3+ times in a row.
_PHRASE_LOOP_PATTERN: re.Pattern[str] = re.compile(
    r"\b(\w+(?:\s+\w+){0,3})(?:[\s,]+\1\b){2,}", re.IGNORECASE,
)


class TranslationStatus(str, Enum):
    SUCCESS = "success"
    CACHED = "cached"
    DUPLICATE = "duplicate"
    EMPTY = "empty"


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    source_text: str
    status: TranslationStatus


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


# ---------------------------------------------------------------------------
# Source cleanup and prompt building
# ---------------------------------------------------------------------------


def clean_source_text(text: str) -> str:
    """
    Prepare text for translation.

    Removes filler tokens, collapses looped short phrases, and drops any
    sentence whose word overlap with an earlier kept sentence exceeds 0.8.
    May return "" when nothing meaningful remains.
    """
    cleaned = strip_fillers(text)
    cleaned = _PHRASE_LOOP_PATTERN.sub(r"\1", cleaned)

    kept: list[str] = []
    for sentence in split_sentences(cleaned):
        if any(word_overlap_similarity(sentence, k) > _SENTENCE_SIMILARITY for k in kept):
            continue
        kept.append(sentence)

    result = " ".join(kept).strip()
    if result and not re.search(r"\w", result):
        return ""
    return result


def build_system_prompt(src_lang: str, dst_lang: str) -> str:
    src, dst = language_name(src_lang), language_name(dst_lang)
    return (
        f"You are a live interpreter. Translate spoken {src} into accurate, natural {dst}.\n"
        "Requirements:\n"
        "1. Preserve technical terms and proper nouns.\n"
        "2. If the source repeats itself, translate the repeated content once.\n"
        "3. Translate meaning, not word for word.\n"
        "4. Do not add explanations or commentary.\n\n"
        "Output format:\n"
        f"{SOURCE_TAG} <the {src} text>\n"
        f"{TRANSLATION_TAG} <the {dst} translation>"
    )


def build_user_prompt(text: str, src_lang: str, dst_lang: str) -> str:
    return (
        f"Transcript ({language_name(src_lang)}):\n"
        f'"""\n{text}\n"""\n\n'
        f"Translate into {language_name(dst_lang)} using the bilingual format."
    )


def parse_formatted_translation(reply: str) -> tuple[str, str]:
    """
    Extract (source, translation) from a bilingual reply.

    Falls back to ("", whole reply) when the tags are missing.
    """
    reply = reply.strip()
    translation_match = re.search(
        re.escape(TRANSLATION_TAG) + r"\s*([\s\S]*?)(?=" + re.escape(SOURCE_TAG) + r"|$)",
        reply,
    )
    source_match = re.search(
        re.escape(SOURCE_TAG) + r"\s*([\s\S]*?)(?=" + re.escape(TRANSLATION_TAG) + r"|$)",
        reply,
    )

    translation = translation_match.group(1).strip() if translation_match else ""
    source = source_match.group(1).strip() if source_match else ""
    if translation:
        return source, translation
    return "", reply


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TranslationClient:
    """
    Chat-completion translator with per-instance cache and coalescing.

    Args:
        client: An ``openai.OpenAI`` instance. Created lazily from
                OPENAI_API_KEY when omitted.
        config: Streaming configuration (languages, model, timeout).
    """

    def __init__(self, client: Any = None, config: StreamingConfig | None = None) -> None:
        self._client = client
        self._config = config or StreamingConfig()
        self._cache = BoundedCache(self._config.cache_size, name="translation-cache")
        self._in_flight = InFlightTracker()
        self._client_lock = threading.Lock()
        self._usage_lock = threading.Lock()
        self._usage = _empty_usage()

    def translate(
        self,
        text: str,
        src_lang: str | None = None,
        dst_lang: str | None = None,
    ) -> TranslationResult:
        """
        Translate *text* from *src_lang* to *dst_lang* (config defaults).

        Returns:
            TranslationResult whose ``source_text`` is the *text* argument
            the translation corresponds to.

        Raises:
            TranslationError: reason "timeout", "rate_limited", "rejected"
                              or "failed".
            MissingCredentials: OPENAI_API_KEY is not set.
        """
        src = src_lang or self._config.source_language
        dst = dst_lang or self._config.target_language

        if not text or not text.strip():
            return TranslationResult("", text, TranslationStatus.EMPTY)

        cleaned = clean_source_text(text)
        if not cleaned:
            logger.debug("Nothing left to translate after cleanup: %r", text[:80])
            return TranslationResult("", text, TranslationStatus.EMPTY)

        key = text_hash(cleaned, src, dst)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Translation cache hit %s.", key[:12])
            _, translated = parse_formatted_translation(cached)
            return TranslationResult(translated, text, TranslationStatus.CACHED)

        if not self._in_flight.claim(key):
            logger.info("Identical translation already in flight — coalescing.")
            return TranslationResult("", text, TranslationStatus.DUPLICATE)

        try:
            reply = self._request(cleaned, src, dst)
        finally:
            self._in_flight.release(key)

        self._cache.put(key, reply)
        _, translated = parse_formatted_translation(reply)
        logger.info("Translated %d chars → %d chars.", len(cleaned), len(translated))
        return TranslationResult(translated, text, TranslationStatus.SUCCESS)

    def get_usage_stats(self) -> dict[str, float]:
        with self._usage_lock:
            return dict(self._usage)

    def reset_usage_stats(self) -> None:
        with self._usage_lock:
            self._usage = _empty_usage()

    def clear_cache(self) -> None:
        self._cache.clear()

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

    def _request(self, text: str, src: str, dst: str) -> str:
        client = self._get_client()
        try:
            response = call_with_retry(
                client.chat.completions.create,
                model=self._config.translation_model,
                messages=[
                    {"role": "system", "content": build_system_prompt(src, dst)},
                    {"role": "user", "content": build_user_prompt(text, src, dst)},
                ],
                temperature=_TEMPERATURE,
                max_tokens=_MAX_TOKENS,
                presence_penalty=_PRESENCE_PENALTY,
                frequency_penalty=_FREQUENCY_PENALTY,
                timeout=self._config.translation_timeout,
            )
        except Exception as exc:
            raise _classify_error(exc) from exc

        self._update_usage(getattr(response, "usage", None))
        content = response.choices[0].message.content or ""
        return content.strip()

    def _update_usage(self, usage: Any) -> None:
        if usage is None:
            return
        prompt_tokens = _usage_field(usage, "prompt_tokens")
        completion_tokens = _usage_field(usage, "completion_tokens")
        total_tokens = _usage_field(usage, "total_tokens") or prompt_tokens + completion_tokens
        with self._usage_lock:
            self._usage["tokens_used"] += total_tokens
            self._usage["requests_count"] += 1
            self._usage["cost_estimate"] += (
                prompt_tokens * _INPUT_COST_PER_TOKEN
                + completion_tokens * _OUTPUT_COST_PER_TOKEN
            )


def _empty_usage() -> dict[str, float]:
    return {"tokens_used": 0, "requests_count": 0, "cost_estimate": 0.0}


def _usage_field(usage: Any, name: str) -> int:
    value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, 0)
    return value if isinstance(value, int) else 0


def _classify_error(exc: Exception) -> TranslationError:
    if is_timeout(exc):
        return TranslationError(f"Translation timed out: {exc}", reason="timeout")
    if is_rate_limit(exc):
        return TranslationError(f"Translation rate limited: {exc}", reason="rate_limited", status_code=429)
    code = status_code_of(exc)
    if code is not None and 400 <= code < 500:
        return TranslationError(
            f"Translation request rejected ({code}): {exc}", reason="rejected", status_code=code,
        )
    return TranslationError(f"Translation failed: {exc}", reason="failed", status_code=code)


# ---------------------------------------------------------------------------
# Debouncer
# ---------------------------------------------------------------------------


class TranslationDebouncer:
    """
    Delay *callback* until *delay* seconds pass without a new schedule().

    Each schedule() cancels the pending timer; only the last one fires.
    The callback runs on a timer thread.
    """

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self._delay = delay
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._token = 0

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._token += 1
            timer = threading.Timer(self._delay, self._fire, args=(self._token,))
            timer.daemon = True
            self._timer = timer
        timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._token += 1

    def flush(self) -> bool:
        """Run the pending callback now. Returns False if nothing was pending."""
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._token += 1
        self._callback()
        return True

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _fire(self, token: int) -> None:
        with self._lock:
            if token != self._token:
                return
            self._timer = None
        try:
            self._callback()
        except Exception as exc:
            logger.error("Debounced translation callback failed: %s", exc, exc_info=True)
