# voicestream/stt/__init__.py
# ============================
# Speech-to-Text Layer — VoiceStream
#
# Responsibility:
#   - Transcribe WAV chunks with OpenAI Whisper (cache, in-flight dedupe,
#     timeout / retry, confidence mapping)
#   - Discard hallucinated output (promotional phrases, loops, noise words)
#
# Public API:
#   RecognitionClient.transcribe(audio_bytes) → TranscriptionResult

from voicestream.stt.whisper_client import (  # noqa: F401
    RecognitionClient,
    RecognitionStatus,
    TranscriptionResult,
)
from voicestream.stt.hallucination import detect_hallucination  # noqa: F401

__all__ = [
    "RecognitionClient",
    "RecognitionStatus",
    "TranscriptionResult",
    "detect_hallucination",
]
