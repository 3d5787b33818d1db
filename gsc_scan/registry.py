from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from .cache import QueryCache, overview_key
from .config import settings
from .functions_client import UpstreamError, fetch_overview
from .logging_utils import get_logger
from .poller import BackgroundPoller
from .progress import build_view
from .scan import ScanController, ScanState, UpdateListener
from .schemas import IndexationOverview

logger = get_logger(__name__)

ControllerFactory = Callable[..., ScanController]


class ScanAlreadyRunning(RuntimeError):
    pass


@dataclass
class _SiteScan:
    controller: ScanController
    poller: Optional[BackgroundPoller] = None
    scan_run_id: Optional[UUID] = None


class ScanRegistry:
    """Per-site scan controllers and pollers for one API process.

    Owns the QueryCache the pollers invalidate, so request handlers receive
    the registry as a dependency instead of reaching for module globals.
    """

    def __init__(
        self,
        *,
        cache: Optional[QueryCache] = None,
        controller_factory: Optional[ControllerFactory] = None,
        poll_interval_s: Optional[float] = None,
        record_history: Optional[bool] = None,
    ) -> None:
        self.cache = cache or QueryCache()
        self._controller_factory = controller_factory or ScanController
        self._poll_interval_s = poll_interval_s
        self._record_history = (
            settings.scan_history_enabled if record_history is None else record_history
        )
        self._lock = threading.Lock()
        self._sites: Dict[str, _SiteScan] = {}

    def _entry(self, site_id: str) -> Optional[_SiteScan]:
        with self._lock:
            return self._sites.get(site_id)

    def _stop_poller_when_finished(self, site_id: str, entry: _SiteScan) -> UpdateListener:
        # Bound to its own entry; a later scan for the site keeps its poller.
        def _on_update(state: ScanState) -> None:
            if state.running:
                return
            with self._lock:
                poller = entry.poller
                entry.poller = None
            if poller is not None:
                poller.stop()
                logger.info("scan.poller_stopped site_id=%s ticks=%s", site_id, poller.ticks)

        return _on_update

    def start(self, site_id: str) -> ScanState:
        # The controller is claimed before the lock is released, so a concurrent
        # start for the same site sees it running.
        with self._lock:
            current = self._sites.get(site_id)
            if current is not None and current.controller.running:
                raise ScanAlreadyRunning(f"scan already running for site {site_id}")
            if current is not None and current.poller is not None:
                current.poller.stop()
                current.poller = None

            scan_run_id: Optional[UUID] = None
            listeners: List[UpdateListener] = []
            if self._record_history:
                from .scan_store import ScanRecorder, create_scan_run

                scan_run_id = create_scan_run(site_id, "api")
                listeners.append(ScanRecorder(scan_run_id))

            poller = BackgroundPoller.for_site(self.cache, site_id, self._poll_interval_s)
            entry = _SiteScan(
                controller=self._controller_factory(listeners=listeners),
                poller=poller,
                scan_run_id=scan_run_id,
            )
            entry.controller.add_listener(self._stop_poller_when_finished(site_id, entry))
            self._sites[site_id] = entry

            poller.start()
            entry.controller.start(
                site_id,
                scan_id=str(scan_run_id) if scan_run_id else None,
            )
        logger.info("scan.registered site_id=%s scan_run_id=%s", site_id, scan_run_id)
        return entry.controller.state

    def stop(self, site_id: str) -> ScanState:
        entry = self._entry(site_id)
        if entry is None:
            raise KeyError(f"no scan for site {site_id}")
        entry.controller.stop()
        return entry.controller.state

    def dismiss(self, site_id: str) -> bool:
        entry = self._entry(site_id)
        if entry is None:
            return True
        return entry.controller.dismiss()

    def state(self, site_id: str) -> ScanState:
        entry = self._entry(site_id)
        return entry.controller.state if entry else ScanState()

    def scan_run_id(self, site_id: str) -> Optional[UUID]:
        entry = self._entry(site_id)
        return entry.scan_run_id if entry else None

    def overview(self, site_id: str) -> IndexationOverview:
        return self.cache.get(overview_key(site_id), lambda: fetch_overview(site_id))

    def view(self, site_id: str) -> Dict[str, Any]:
        state = self.state(site_id)
        total_urls: Optional[int] = None
        if state.running or state.done:
            try:
                total_urls = self.overview(site_id).total or None
            except UpstreamError as exc:
                logger.debug("scan.overview_unavailable site_id=%s error=%s", site_id, str(exc))
        view = build_view(state, total_urls=total_urls)
        scan_run_id = self.scan_run_id(site_id)
        return {
            "site_id": site_id,
            "scan_run_id": str(scan_run_id) if scan_run_id else None,
            "state": {
                "running": state.running,
                "inspected": state.inspected,
                "remaining": state.remaining,
                "passes": state.passes,
                "done": state.done,
                "error": state.error,
                "cancelled": state.cancelled,
            },
            "view": view.as_dict() if view else None,
        }

    def shutdown(self) -> None:
        with self._lock:
            entries = list(self._sites.values())
        for entry in entries:
            entry.controller.stop()
            if entry.poller is not None:
                entry.poller.stop()
