"""
voicestream/nlp/normalizer.py
==============================
Text Normalizer — VoiceStream

Responsibility:
    - Clean one recognized chunk before it joins the pending transcript:
      collapse character / word runs, drop filler-only utterances,
      normalize whitespace, cap the length
    - Guard the pending buffer against duplicate or degenerate appends
      (check_accumulation)
    - Provide the word-level similarity / repetition helpers shared with
      the hallucination filter and the translator

This module does NOT:
    - Call any external API
    - Decide segment boundaries (handled by segmenter.py)
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass

logger = logging.getLogger("voicestream.nlp.normalizer")

DEFAULT_MAX_CHARS: int = 500
TRUNCATION_MARKER: str = "..."

SENTENCE_MARKERS: str = ".!?。！？"


# ---------------------------------------------------------------------------
# Filler words: an utterance made only of these is dropped
# ---------------------------------------------------------------------------

_FILLER_WORDS: list[str] = [
    "uh",
    "uhh",
    "uhhh",
    "um",
    "umm",
    "ummm",
    "hmm",
    "hmmm",
    "hmmmm",
    "er",
    "err",
    "ah",
    "ahh",
    "mhm",
    "uh-huh",
    "uh huh",
]

_FILLER_PATTERN: re.Pattern[str] = re.compile(
    r"\b(?:" + "|".join(re.escape(f) for f in sorted(_FILLER_WORDS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
_FILLER_WITH_COMMA: re.Pattern[str] = re.compile(_FILLER_PATTERN.pattern + r",?", re.IGNORECASE)

# 6+ identical characters → 2 ("soooooo" → "soo", "!!!!!!" → "!!")
_CHAR_RUN_PATTERN: re.Pattern[str] = re.compile(r"(.)\1{5,}", re.DOTALL)

# 4+ identical consecutive words → 2
_WORD_RUN_PATTERN: re.Pattern[str] = re.compile(
    r"\b([\w']+)(?:\s+\1\b){3,}", re.IGNORECASE,
)

_WORD_PATTERN: re.Pattern[str] = re.compile(r"[\w']+")
# Latin markers end a sentence only before whitespace ("3.5" stays whole);
# CJK markers always do.
_SENTENCE_SPLIT: re.Pattern[str] = re.compile(r"(?<=[.!?])\s+|(?<=[。！？])")


# ---------------------------------------------------------------------------
# Shared word-level helpers
# ---------------------------------------------------------------------------


def tokenize_words(text: str) -> list[str]:
    """Lower-cased word tokens."""
    return _WORD_PATTERN.findall(text.lower())


def split_sentences(text: str) -> list[str]:
    """Split on sentence markers (Latin and CJK), keeping the markers."""
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s and s.strip()]


def word_overlap_similarity(a: str, b: str) -> float:
    """Shared distinct words / distinct words of the larger side, in [0, 1]."""
    words_a = set(tokenize_words(a))
    words_b = set(tokenize_words(b))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def word_repetition_ratio(text: str, min_word_len: int = 3, min_words: int = 4) -> float:
    """
    1 - distinct/total over words at least *min_word_len* long.

    Returns 0.0 when fewer than *min_words* words qualify, so short
    utterances never look repetitive.
    """
    words = [w for w in tokenize_words(text) if len(w) >= min_word_len]
    if len(words) < min_words:
        return 0.0
    return 1.0 - len(set(words)) / len(words)


def longest_token_run(text: str) -> int:
    """Length of the longest run of identical consecutive word tokens."""
    words = tokenize_words(text)
    longest = run = 0
    previous = None
    for word in words:
        run = run + 1 if word == previous else 1
        previous = word
        longest = max(longest, run)
    return longest


def max_ngram_count(text: str, n: int = 3) -> int:
    """Highest occurrence count of any word n-gram in *text*."""
    words = tokenize_words(text)
    if len(words) < n:
        return 0
    grams = Counter(tuple(words[i:i + n]) for i in range(len(words) - n + 1))
    return max(grams.values())


def is_filler_only(text: str) -> bool:
    """True when nothing but fillers and punctuation remains."""
    stripped = _FILLER_PATTERN.sub("", text)
    return not _WORD_PATTERN.search(stripped)


def strip_fillers(text: str) -> str:
    """Remove filler words and tidy the surrounding whitespace."""
    result = _FILLER_WITH_COMMA.sub("", text)
    result = re.sub(r"\s+([,.!?])", r"\1", result)
    result = re.sub(r"^[\s,]+", "", result)
    return re.sub(r"\s+", " ", result).strip()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Normalize one recognized chunk.

    Steps (in order):
        1. Collapse runs of 6+ identical characters to 2
        2. Collapse runs of 4+ identical words to 2
        3. Collapse whitespace and strip
        4. Filler-only utterance → ""
        5. Longer than *max_chars* → first *max_chars* characters + "..."

    Args:
        text:      Recognized text.
        max_chars: Length cap before the truncation marker.

    Returns:
        Normalized text, possibly empty.
    """
    if not text or not text.strip():
        return ""

    result = _CHAR_RUN_PATTERN.sub(r"\1\1", text)
    result = _WORD_RUN_PATTERN.sub(lambda m: f"{m.group(1)} {m.group(1)}", result)
    result = re.sub(r"\s+", " ", result).strip()

    if is_filler_only(result):
        logger.debug("Dropped filler-only utterance: %r", result)
        return ""

    if len(result) > max_chars:
        result = result[:max_chars].rstrip() + TRUNCATION_MARKER

    return result


def append_text(buffer_text: str, new_text: str) -> str:
    """Join a new chunk onto the pending text with a single space."""
    if not buffer_text:
        return new_text
    if not new_text:
        return buffer_text
    return f"{buffer_text.rstrip()} {new_text.lstrip()}"


# ---------------------------------------------------------------------------
# Accumulation guard
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccumulationDecision:
    accepted: bool
    reason: str
    suggest_seal: bool = False


def has_abnormal_repetition(text: str) -> bool:
    """3+ identical consecutive words, or a word 3-gram repeated 3+ times."""
    return longest_token_run(text) >= 3 or max_ngram_count(text, 3) >= 3


def check_accumulation(
    buffer_text: str,
    new_text: str,
    repetition_threshold: float = 0.5,
) -> AccumulationDecision:
    """
    Decide whether *new_text* may be appended to the pending buffer.

    Rejected when the chunk is empty, already contained in the buffer
    (case-insensitive), a near-duplicate of the buffer's last sentence,
    abnormally repetitive, or when appending it would push the buffer's
    word-repetition ratio above *repetition_threshold*. The last case also
    suggests sealing the current buffer.
    """
    new_clean = new_text.strip()
    if not new_clean:
        return AccumulationDecision(False, "empty")

    buffer_clean = buffer_text.strip()
    if buffer_clean and new_clean.lower() in buffer_clean.lower():
        return AccumulationDecision(False, "duplicate")

    if buffer_clean and len(tokenize_words(new_clean)) >= 4:
        last_sentence = (split_sentences(buffer_clean) or [buffer_clean])[-1]
        if word_overlap_similarity(last_sentence, new_clean) > 0.8:
            return AccumulationDecision(False, "near_duplicate")

    if has_abnormal_repetition(new_clean):
        return AccumulationDecision(False, "abnormal_repetition")

    combined = append_text(buffer_clean, new_clean)
    ratio = word_repetition_ratio(combined)
    if ratio > repetition_threshold:
        logger.info(
            "Buffer repetition ratio %.2f > %.2f — rejecting chunk and suggesting seal.",
            ratio, repetition_threshold,
        )
        return AccumulationDecision(False, "buffer_repetition", suggest_seal=True)

    return AccumulationDecision(True, "accepted")
