from __future__ import annotations

import threading
from typing import Optional, Sequence

from .cache import CacheKey, QueryCache, overview_key, urls_key
from .config import settings
from .logging_utils import get_logger

logger = get_logger(__name__)


class BackgroundPoller:
    """Invalidates cached aggregates on a fixed interval while a scan runs.

    Runs on its own daemon thread so the visible totals move between batch
    calls. No retry or backoff: a failed invalidation is skipped until the
    next tick.
    """

    def __init__(
        self,
        cache: QueryCache,
        keys: Sequence[CacheKey],
        interval_s: Optional[float] = None,
    ) -> None:
        self._cache = cache
        self._keys = list(keys)
        self._interval_s = settings.poll_interval_s if interval_s is None else interval_s
        if self._interval_s <= 0:
            raise ValueError("poll interval must be > 0")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @classmethod
    def for_site(
        cls, cache: QueryCache, site_id: str, interval_s: Optional[float] = None
    ) -> "BackgroundPoller":
        return cls(cache, [overview_key(site_id), urls_key(site_id)], interval_s)

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        thread = threading.Thread(target=self._run, name="scan-poller", daemon=True)
        self._thread = thread
        thread.start()

    def stop(self, timeout_s: Optional[float] = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout_s)

    def tick(self) -> None:
        for key in self._keys:
            try:
                self._cache.invalidate(key)
            except Exception as exc:
                logger.debug("poller.invalidate_failed key=%s error=%s", key, str(exc))
        self.ticks += 1

    def _run(self) -> None:
        while not self._stop.wait(self._interval_s):
            self.tick()
