"""
voicestream/cache.py
=====================
Response Caches — VoiceStream

Responsibility:
    - Bounded LRU cache for raw provider responses (recognition, translation)
    - In-flight request tracking so identical concurrent requests are
      suppressed instead of double-invoking the provider
    - Content hashing helpers (audio bytes, normalized text)

Caches are owned by a client instance, never module-level, so two sessions
never share entries.
"""

import hashlib
import logging
import re
import threading
from collections import OrderedDict
from typing import Any

logger = logging.getLogger("voicestream.cache")

DEFAULT_MAX_ENTRIES: int = 25


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def text_hash(text: str, *parts: str) -> str:
    """
    SHA-256 of whitespace/case-normalized text plus optional qualifiers
    (e.g. language codes), so "Hello  world" and "hello world" collide.
    """
    normalized = re.sub(r"\s+", " ", text).strip().lower()
    key = "\x1f".join([normalized, *parts])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Bounded LRU
# ---------------------------------------------------------------------------


class BoundedCache:
    """LRU map with eviction on insert."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, name: str = "cache") -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._max_entries = max_entries
        self._name = name
        self._entries: OrderedDict[str, Any] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        if key not in self._entries:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return self._entries[key]

    def put(self, key: str, value: Any) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = value
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("%s evicted %s", self._name, evicted[:12])

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}


# ---------------------------------------------------------------------------
# In-flight tracking
# ---------------------------------------------------------------------------


class InFlightTracker:
    """Set of request keys currently being served by the provider."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: set[str] = set()

    def claim(self, key: str) -> bool:
        """Mark *key* in flight. Returns False if it already was."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys
