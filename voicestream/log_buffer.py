"""
voicestream/log_buffer.py
==========================
In-memory log ring — VoiceStream

Keeps the most recent pipeline log records so the session status (and the
HTTP status endpoint) can show what was filtered, discarded or retried
without shipping a log file around. Records are grouped by category: the
second component of the ``voicestream.<category>...`` logger name.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

DEFAULT_MAX_RECORDS: int = 1000


@dataclass(frozen=True)
class LogEntry:
    timestamp: float
    level: str
    category: str
    message: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "category": self.category,
            "message": self.message,
        }


def _category_of(logger_name: str) -> str:
    parts = logger_name.split(".")
    if len(parts) >= 2 and parts[0] == "voicestream":
        return parts[1]
    return parts[0]


class RingBufferHandler(logging.Handler):
    """logging.Handler that retains the last *max_records* entries."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS, level: int = logging.DEBUG) -> None:
        super().__init__(level=level)
        self._entries: deque[LogEntry] = deque(maxlen=max_records)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=record.created,
                level=record.levelname.lower(),
                category=_category_of(record.name),
                message=record.getMessage(),
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    # ---- queries ---------------------------------------------------------

    def recent(self, count: int = 50) -> list[LogEntry]:
        with self._entries_lock:
            entries = list(self._entries)
        return entries[-count:] if count > 0 else []

    def by_category(self, category: str) -> list[LogEntry]:
        with self._entries_lock:
            return [e for e in self._entries if e.category == category]

    def by_level(self, level: str) -> list[LogEntry]:
        level = level.lower()
        with self._entries_lock:
            return [e for e in self._entries if e.level == level]

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def export_text(self) -> str:
        """One line per entry: ISO time, level, category, message."""
        with self._entries_lock:
            entries = list(self._entries)
        lines = []
        for e in entries:
            ts = datetime.fromtimestamp(e.timestamp, tz=timezone.utc).isoformat()
            lines.append(f"{ts} [{e.level.upper()}] [{e.category}] {e.message}")
        return "\n".join(lines)


def install_ring_buffer(max_records: int = DEFAULT_MAX_RECORDS) -> RingBufferHandler:
    """
    Attach a RingBufferHandler to the ``voicestream`` logger, reusing an
    existing one if already installed.
    """
    root = logging.getLogger("voicestream")
    for handler in root.handlers:
        if isinstance(handler, RingBufferHandler):
            return handler
    handler = RingBufferHandler(max_records=max_records)
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > logging.INFO:
        root.setLevel(logging.INFO)
    return handler
