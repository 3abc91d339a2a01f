"""
In-Process TTL Store

Key -> (value, inserted_at, ttl) mapping with expiry-on-read.

Expired entries are never returned. The read that finds an expired entry
removes it; sweep() removes the rest so write-once keys don't pile up.
"""

import json
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Pattern


Clock = Callable[[], float]


class _Missing:
    """Sentinel for absent entries, so None stays a cacheable value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass
class CacheEntry:
    """A cached value with its insertion time (clock seconds) and TTL."""
    value: Any
    inserted_at: float
    ttl: timedelta

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl.total_seconds()


class TTLStore:
    """
    Thread-safe in-memory TTL store.

    Every operation holds the lock, so expire-and-delete on read is atomic.
    The clock is injectable; it must be monotonic and return seconds.
    """

    def __init__(
        self,
        default_ttl: timedelta = timedelta(minutes=5),
        clock: Clock = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl: Optional[timedelta] = None) -> None:
        entry = CacheEntry(
            value=value,
            inserted_at=self._clock(),
            ttl=ttl if ttl is not None else self.default_ttl,
        )
        with self._lock:
            self._entries[key] = entry

    def get(self, key: str) -> Any:
        """Return the live value for key, or MISSING."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISSING
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return MISSING
            return entry.value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def delete_matching(self, pattern: Pattern) -> int:
        """Delete every key the compiled regex finds a match in."""
        with self._lock:
            matched = [key for key in self._entries if pattern.search(key)]
            for key in matched:
                del self._entries[key]
        return len(matched)

    def sweep(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def approximate_memory(self) -> int:
        """
        Rough memory estimate: key length + JSON length of each value.

        Not allocator accounting. Values JSON can't encode count by repr().
        """
        with self._lock:
            items = [(key, entry.value) for key, entry in self._entries.items()]

        total = 0
        for key, value in items:
            try:
                encoded = json.dumps(value, default=str)
            except (TypeError, ValueError):
                encoded = repr(value)
            total += len(key) + len(encoded)
        return total

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISSING
