"""
voicestream/stt/hallucination.py
=================================
Recognizer Hallucination Filter — VoiceStream

Whisper, fed short or near-silent chunks, tends to invent text: channel
outros ("thanks for watching", "subscribe"), subtitle credits, URLs, or the
same phrase looped. This module recognises those patterns so the
recognition client can discard the chunk instead of letting it reach the
transcript.

This module does NOT:
    - Call any external API
    - Raise (detect_hallucination returns the matched pattern name)
"""

import logging
import re

from voicestream.nlp.normalizer import (
    longest_token_run,
    max_ngram_count,
    split_sentences,
    tokenize_words,
    word_overlap_similarity,
    word_repetition_ratio,
)

logger = logging.getLogger("voicestream.stt.hallucination")


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_PROMOTIONAL_PHRASES: list[str] = [
    "thanks for watching",
    "thank you for watching",
    "thanks for listening",
    "please subscribe",
    "subscribe to my channel",
    "like and subscribe",
    "don't forget to subscribe",
    "see you in the next video",
    "subtitles by",
    "subtitled by",
    "captions by",
    "transcribed by",
    "amara.org",
    "请不吝点赞",
    "订阅",
    "字幕由",
]

_PROMOTIONAL_PATTERN: re.Pattern[str] = re.compile(
    "|".join(re.escape(p) for p in _PROMOTIONAL_PHRASES), re.IGNORECASE,
)

_URL_PATTERN: re.Pattern[str] = re.compile(
    r"(?:https?://|www\.)\S+|\b[\w-]+\.(?:com|org|net|io|tv)\b", re.IGNORECASE,
)

# Stock utterances Whisper emits for background noise.
NOISE_WORDS: tuple[str, ...] = ("thank you", "bye", "you", "um", "uh", "yeah")
_NOISE_MAX_CHARS: int = 10

_CONSECUTIVE_TOKEN_LIMIT: int = 3
_NGRAM_SIZE: int = 3
_NGRAM_REPEAT_LIMIT: int = 3
_SENTENCE_SIMILARITY: float = 0.8
_MIN_TOKENS_FOR_RATIO: int = 8


def detect_hallucination(
    text: str,
    repetition_ratio_threshold: float = 0.55,
) -> str | None:
    """
    Check recognizer output against known hallucination patterns.

    Args:
        text:                       Raw recognized text.
        repetition_ratio_threshold: Max share of repeated tokens tolerated
                                    in utterances of 8+ tokens.

    Returns:
        The name of the first matched pattern, or None if the text looks
        genuine. Empty text returns None.
    """
    stripped = text.strip()
    if not stripped:
        return None

    if _PROMOTIONAL_PATTERN.search(stripped):
        return "promotional_phrase"

    if _URL_PATTERN.search(stripped):
        return "url"

    if longest_token_run(stripped) >= _CONSECUTIVE_TOKEN_LIMIT:
        return "consecutive_repetition"

    if max_ngram_count(stripped, _NGRAM_SIZE) >= _NGRAM_REPEAT_LIMIT:
        return "repeated_phrase"

    if _has_duplicate_sentences(stripped):
        return "duplicate_sentences"

    tokens = tokenize_words(stripped)
    if len(tokens) >= _MIN_TOKENS_FOR_RATIO:
        ratio = word_repetition_ratio(stripped, min_word_len=1, min_words=_MIN_TOKENS_FOR_RATIO)
        if ratio > repetition_ratio_threshold:
            return "token_repetition"

    if _is_noise_only(stripped):
        return "noise_word"

    return None


# ---------------------------------------------------------------------------
# Internal checks
# ---------------------------------------------------------------------------


def _has_duplicate_sentences(text: str) -> bool:
    """True when at least half the sentences closely repeat an earlier one."""
    sentences = split_sentences(text)
    if len(sentences) < 2:
        return False

    duplicates = 0
    for i in range(1, len(sentences)):
        if any(
            word_overlap_similarity(sentences[i], earlier) > _SENTENCE_SIMILARITY
            for earlier in sentences[:i]
        ):
            duplicates += 1
    return duplicates >= len(sentences) / 2


def _is_noise_only(text: str) -> bool:
    if len(text) >= _NOISE_MAX_CHARS:
        return False
    lowered = text.lower()
    return any(word in lowered for word in NOISE_WORDS)
