"""Thread-safe in-memory snapshot cache."""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from .models import NormalizedRecord, StreamKey


@dataclass(frozen=True, slots=True)
class CacheEntry:
    record: NormalizedRecord
    stored_at: float  # Monotonic seconds


class SnapshotCache:
    """Latest normalized record per StreamKey, bounded by age and size.

    Writer: the Dispatcher, on the multiplexer's event loop.
    Readers: the Dispatcher (replay to new subscribers) and host code calling
    snapshot() from any thread.

    Entries are kept in store order, so both staleness and capacity eviction
    pop from the front. Eviction runs on every put(); there is no timer.
    """

    def __init__(
        self,
        staleness: float = 60.0,
        capacity: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if staleness <= 0:
            raise ValueError("staleness must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: OrderedDict[StreamKey, CacheEntry] = OrderedDict()
        self._lock = Lock()
        self._staleness = staleness
        self._capacity = capacity
        self._clock = clock
        self._version: int = 0  # Bumped on every put

    def put(self, key: StreamKey, record: NormalizedRecord) -> None:
        """Store a record, replacing any previous entry for the key."""
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(record=record, stored_at=self._clock())
            self._version += 1
            self._evict_locked()

    def get(self, key: StreamKey) -> NormalizedRecord | None:
        """Latest record for the key, or None if unknown or older than staleness."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._is_stale(entry):
                return None
            return entry.record

    def get_entry(self, key: StreamKey) -> CacheEntry | None:
        """Like get() but returns the entry with its store time."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._is_stale(entry):
                return None
            return entry

    def get_all(self) -> dict[StreamKey, NormalizedRecord]:
        """Fresh records only. Returns a copy."""
        with self._lock:
            return {k: e.record for k, e in self._entries.items() if not self._is_stale(e)}

    def evict(self) -> int:
        """Drop stale entries and trim to capacity. Returns how many were removed."""
        with self._lock:
            return self._evict_locked()

    def remove(self, key: StreamKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def staleness(self) -> float:
        return self._staleness

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def version(self) -> int:
        """Current version counter. Useful for change detection."""
        return self._version

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: StreamKey) -> bool:
        return self.get(key) is not None

    # --- Internal ---

    def _is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at > self._staleness

    def _evict_locked(self) -> int:
        removed = 0
        while self._entries:
            oldest = next(iter(self._entries.values()))
            if not self._is_stale(oldest):
                break
            self._entries.popitem(last=False)
            removed += 1
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)
            removed += 1
        return removed
