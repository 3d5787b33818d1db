from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, TypeVar

from .config import settings

CacheKey = Tuple[Hashable, ...]
T = TypeVar("T")

OVERVIEW_KEY = "gsc-indexation-overview"
URLS_KEY = "gsc-indexation-urls"


def overview_key(site_id: str) -> CacheKey:
    return (OVERVIEW_KEY, site_id)


def urls_key(site_id: str, *parts: Hashable) -> CacheKey:
    return (URLS_KEY, site_id, *parts)


@dataclass
class _Entry:
    value: Any
    fetched_at: float


class QueryCache:
    """Read-through cache for upstream aggregates, keyed by tuples.

    ``invalidate`` takes a key prefix, so ``(URLS_KEY, site_id)`` drops every
    page and filter combination cached for that site.
    """

    def __init__(
        self,
        ttl_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = settings.cache_ttl_s if ttl_s is None else ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, _Entry] = {}
        self.invalidations = 0

    def _fresh(self, entry: _Entry) -> bool:
        if self._ttl_s <= 0:
            return False
        return self._clock() - entry.fetched_at < self._ttl_s

    def peek(self, key: CacheKey) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not self._fresh(entry):
                return None
            return entry.value

    def get(self, key: CacheKey, loader: Callable[[], T]) -> T:
        cached = self.peek(key)
        if cached is not None:
            return cached
        # Loader runs outside the lock; concurrent misses may both fetch.
        value = loader()
        self.set(key, value)
        return value

    def set(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, fetched_at=self._clock())

    def invalidate(self, prefix: CacheKey) -> int:
        size = len(prefix)
        with self._lock:
            doomed = [key for key in self._entries if key[:size] == prefix]
            for key in doomed:
                del self._entries[key]
            self.invalidations += 1
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
