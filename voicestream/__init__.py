# voicestream/__init__.py
# ========================
# VoiceStream — adaptive streaming transcription pipeline
#
# Live audio in (microphone + optional system audio); clean, deduplicated,
# translated, segmented bilingual transcript out.
#
# Public API:
#   - StreamingSession   — start / pause / resume / stop, events, segments
#   - StreamingConfig    — every tunable, from env (VOICESTREAM_*)
#   - EventBus, EventType

from voicestream.config import StreamingConfig  # noqa: F401
from voicestream.events import Event, EventBus, EventType  # noqa: F401
from voicestream.session import SessionState, StreamingSession  # noqa: F401

__version__ = "1.0.0"
