# voicestream/nlp/__init__.py
# ============================
# Text Layer — VoiceStream
#
# Responsibility:
#   - Normalize recognized chunks and guard the pending buffer
#     (normalizer.py)
#   - Translate the pending text with caching, coalescing and debouncing
#     (translator.py)
#   - Seal the pending buffer into bilingual segments (segmenter.py)

from voicestream.nlp.normalizer import (  # noqa: F401
    AccumulationDecision,
    check_accumulation,
    normalize_text,
)
from voicestream.nlp.translator import (  # noqa: F401
    TranslationClient,
    TranslationDebouncer,
    TranslationResult,
    TranslationStatus,
)
from voicestream.nlp.segmenter import (  # noqa: F401
    PendingTranscriptBuffer,
    SegmentationEngine,
    SegmentationResult,
    TranscriptionSegment,
)
