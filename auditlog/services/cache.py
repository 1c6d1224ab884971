"""Process-local result cache for audit queries."""
from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from auditlog.utils.time import utcnow


class ResultCache(Protocol):
    """Swappable cache port; entries expire by TTL only."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None: ...

    def clear(self) -> None: ...


@dataclass
class CacheEntry:
    value: Any
    expires_at: datetime


class InMemoryTTLCache:
    """Thread-safe TTL cache with a bounded entry count.

    Writes to the audit store never invalidate entries; readers tolerate
    staleness until the TTL elapses.
    """

    def __init__(
        self,
        default_ttl: timedelta = timedelta(minutes=15),
        *,
        max_entries: int = 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + (ttl or self.default_ttl))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["ResultCache", "InMemoryTTLCache", "CacheEntry"]
