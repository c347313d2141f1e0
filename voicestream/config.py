"""
voicestream/config.py
======================
Streaming Configuration — VoiceStream

Responsibility:
    - Gather every tunable of the streaming pipeline into one frozen
      dataclass (StreamingConfig)
    - Read overrides from the environment (``VOICESTREAM_*``), after
      loading a local ``.env`` file

Repetition / hallucination thresholds were tuned on English → Chinese
speech and are deliberately exposed here rather than hard-coded in the
filters; other language pairs may need different values.

This module does NOT:
    - Read API keys (the OpenAI clients read OPENAI_API_KEY themselves)
    - Persist settings
"""

import logging
import os
from dataclasses import dataclass, fields

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("voicestream.config")

ENV_PREFIX = "VOICESTREAM_"


@dataclass(frozen=True)
class StreamingConfig:
    """All pipeline parameters. Durations suffixed _ms are milliseconds, others seconds."""

    # --- capture / mixing ---
    sample_rate: int = 16000
    channels: int = 1
    block_size: int = 4096
    primary_device: str | None = None
    secondary_device: str | None = None
    enable_secondary_source: bool = True
    primary_gain: float = 0.8
    secondary_gain: float = 0.6

    # --- quality monitor ---
    quality_tick_ms: int = 500
    quality_window: int = 20
    fft_size: int = 256

    # --- scheduler ---
    base_interval_ms: int = 2000
    min_interval_ms: int = 1000
    max_interval_ms: int = 5000
    rate_limit_max_interval_ms: int = 15000
    silence_threshold: float = 0.01
    silence_duration_ms: int = 1000

    # --- recognition ---
    recognition_model: str = "whisper-1"
    recognition_timeout: float = 30.0
    recognition_prompt: str | None = None
    min_audio_bytes: int = 1000
    min_confidence: float = 0.5
    repetition_ratio_threshold: float = 0.55

    # --- normalizer ---
    max_text_chars: int = 500
    accumulation_repetition_threshold: float = 0.5

    # --- translation ---
    source_language: str = "en"
    target_language: str = "zh"
    translation_model: str = "gpt-4o-mini"
    translation_timeout: float = 15.0
    translation_delay_ms: int = 500

    # --- caches ---
    cache_size: int = 25

    # --- segmentation ---
    max_sentences_per_segment: int = 8
    max_segment_duration: float = 60.0
    max_lines_per_segment: int = 10

    # --- error surfacing ---
    systemic_failure_threshold: int = 3

    # --- storage hand-off ---
    segment_webhook_url: str | None = None

    @classmethod
    def from_env(cls, **overrides) -> "StreamingConfig":
        """
        Build a config from defaults, ``VOICESTREAM_<FIELD>`` environment
        variables, then explicit keyword overrides (highest priority).

        Raises:
            ValueError: If an environment value cannot be parsed.
        """
        values: dict = {}
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _parse_env_value(f.name, raw.strip(), f.default)

        # Storage collaborator URL is commonly configured without the prefix.
        if "segment_webhook_url" not in values and os.environ.get("SEGMENT_WEBHOOK_URL"):
            values["segment_webhook_url"] = os.environ["SEGMENT_WEBHOOK_URL"].strip()

        values.update(overrides)
        config = cls(**values)
        logger.debug("Streaming config resolved: %s", config)
        return config


def _parse_env_value(name: str, raw: str, default):
    """Coerce an environment string to the type of the field's default."""
    try:
        if isinstance(default, bool):
            return raw.lower() in ("true", "1", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from exc
    return raw
