"""In-memory TTL cache for resolved decisions."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Any

from .config import DEFAULT_CACHE_TTL_SECONDS


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


# Returned by TTLCache.get() when nothing usable is stored.
MISS: Any = _Miss()


class _CacheEntry:
    __slots__ = ("value", "stored_at", "ttl")

    def __init__(self, value: Any, stored_at: float, ttl: float) -> None:
        self.value = value
        self.stored_at = stored_at
        self.ttl = ttl

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class TTLCache:
    """
    Thread-safe keyed store with per-entry expiry.

    Expiry is lazy: an expired entry is dropped when it is read, there is no
    background sweeper. ``len()`` therefore counts entries that may already be
    stale but have not been looked at yet.

    USAGE:
        cache = TTLCache(default_ttl=60.0)
        cache.put(("flag", "dark_mode", token), result)
        hit = cache.get(("flag", "dark_mode", token))
        if hit is not MISS:
            return hit
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[Hashable, _CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def get(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return MISS
            return entry.value

    def put(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        entry = _CacheEntry(value, self._clock(), self._default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def evict_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches ``predicate``; return how many went."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
