"""Process-local TTL cache used for ledger lookups and derived train stats.

The cache is advisory only: every caller treats a miss as "ask the store".
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    """Cache capability interface."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None: ...

    def invalidate(self, key: str) -> None: ...


class _CacheEntry:
    """Single cache entry with optional TTL."""

    __slots__ = ("expires_at", "value")

    def __init__(self, value: Any, expires_at: float | None) -> None:
        self.value = value
        self.expires_at = expires_at

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class InMemoryCache:
    """OrderedDict-based LRU cache with per-entry TTL.

    Expired entries are evicted lazily on access. A ``threading.Lock`` guards
    the map so the cache can be shared between the event loop and the CLI.
    """

    __slots__ = ("_clock", "_data", "_lock", "_max_size")

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_size = max_size
        self._clock = clock
        self._data: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._data.pop(key, None)
            while len(self._data) >= self._max_size:
                self._data.popitem(last=False)
            self._data[key] = _CacheEntry(value, expires_at)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._data)
