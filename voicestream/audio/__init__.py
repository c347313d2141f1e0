# voicestream/audio/__init__.py
# ==============================
# Audio Layer — VoiceStream
#
# Responsibility:
#   - Acquire / release capture sources (primary microphone, secondary loopback)
#   - Mix active sources into one shared mono PCM buffer
#   - Sample volume / clarity / quality every tick
#   - Encode PCM windows as 16-bit WAV for the recognizer
#
# Public API:
#   - AudioSourceManager, SourceKind, AudioSource
#   - AudioMixer, AudioBuffer, PCMWindow, mix
#   - QualityMonitor, QualitySample
#   - encode, decode_wav, empty_wav

from voicestream.audio.sources import (  # noqa: F401
    AudioSource,
    AudioSourceManager,
    CaptureBackend,
    SoundDeviceBackend,
    SourceKind,
)
from voicestream.audio.quality import QualityMonitor, QualitySample  # noqa: F401
from voicestream.audio.mixer import AudioBuffer, AudioMixer, PCMWindow, mix  # noqa: F401
from voicestream.audio.encoder import decode_wav, empty_wav, encode  # noqa: F401
