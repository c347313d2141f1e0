"""
voicestream/events.py
======================
Event Bus — VoiceStream

Responsibility:
    - Define the typed events the pipeline emits to the application layer
      (EventType + one payload dataclass per event)
    - Deliver them to subscribers synchronously and in publish order

Handlers run on the publishing thread. A failing handler is logged and
skipped; it never breaks delivery to the remaining handlers or the pipeline.

This module does NOT:
    - Queue or persist events
    - Cross thread boundaries (the API layer does that for WebSocket clients)
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("voicestream.events")


class EventType(str, Enum):
    TRANSCRIPTION_UPDATE = "transcription_update"
    TRANSLATION_UPDATE = "translation_update"
    SEGMENT_CREATED = "segment_created"
    AUDIO_SOURCE_CHANGED = "audio_source_changed"
    AUDIO_QUALITY_UPDATE = "audio_quality_update"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TranscriptionUpdate:
    text: str
    confidence: float
    timestamp: float


@dataclass(frozen=True)
class TranslationUpdate:
    text: str
    translation: str
    timestamp: float


@dataclass(frozen=True)
class SegmentCreated:
    segment: Any  # TranscriptionSegment
    total_segments: int
    stats: dict[str, Any]


@dataclass(frozen=True)
class AudioSourceChanged:
    sources: list[dict[str, Any]]


@dataclass(frozen=True)
class AudioQualityUpdate:
    metrics: Any  # QualitySample


@dataclass(frozen=True)
class ErrorOccurred:
    message: str


_PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.TRANSCRIPTION_UPDATE: TranscriptionUpdate,
    EventType.TRANSLATION_UPDATE: TranslationUpdate,
    EventType.SEGMENT_CREATED: SegmentCreated,
    EventType.AUDIO_SOURCE_CHANGED: AudioSourceChanged,
    EventType.AUDIO_QUALITY_UPDATE: AudioQualityUpdate,
    EventType.ERROR: ErrorOccurred,
}


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Any
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation."""
        return {
            "type": self.type.value,
            "data": _to_jsonable(self.payload),
            "timestamp": self.timestamp,
        }


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return {k: _to_jsonable(getattr(value, k)) for k in asdict(value)}
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

Handler = Callable[[Event], None]


class EventBus:
    """Ordered synchronous publish/subscribe."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handlers: dict[EventType, list[Handler]] = {t: [] for t in EventType}
        self._wildcard: list[Handler] = []

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register *handler* for one event type. Returns an unsubscribe callable."""
        with self._lock:
            self._handlers[EventType(event_type)].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers[EventType(event_type)]
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        """Register *handler* for every event type."""
        with self._lock:
            self._wildcard.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._wildcard:
                    self._wildcard.remove(handler)

        return _unsubscribe

    def publish(self, event_type: EventType, payload: Any) -> Event:
        """
        Build and deliver an event.

        Raises:
            TypeError: If *payload* is not the dataclass registered for
                       *event_type*.
        """
        expected = _PAYLOAD_TYPES[EventType(event_type)]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event_type.value} expects {expected.__name__}, got {type(payload).__name__}"
            )

        event = Event(type=EventType(event_type), payload=payload)
        with self._lock:
            handlers = list(self._handlers[event.type]) + list(self._wildcard)
            for handler in handlers:
                try:
                    handler(event)
                except Exception as exc:
                    logger.error(
                        "Event handler failed for %s: %s", event.type.value, exc, exc_info=True,
                    )
        return event

    def handler_count(self, event_type: EventType | None = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(h) for h in self._handlers.values()) + len(self._wildcard)
            return len(self._handlers[EventType(event_type)])
