from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional

from .config import settings
from .functions_client import UpstreamError, clamp_batch_size, inspect_batch, refresh_sitemap
from .logging_utils import bind_scan_context, get_logger, reset_scan_context
from .schemas import InspectBatchResult

logger = get_logger(__name__)

InspectFn = Callable[[str, int], InspectBatchResult]
RefreshFn = Callable[[str], Any]
UpdateListener = Callable[["ScanState"], None]


@dataclass(frozen=True)
class ScanState:
    running: bool = False
    inspected: int = 0
    remaining: Optional[int] = None
    passes: int = 0
    done: bool = False
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def finished(self) -> bool:
        return self.done or self.cancelled or self.error is not None


class CancellationToken:
    """Cooperative stop flag shared between a scan loop and whoever stops it."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout_s: float) -> bool:
        """Sleep for up to ``timeout_s``; returns True if the token was cancelled."""
        if timeout_s > 0:
            self._event.wait(timeout_s)
        return self.cancelled


class ScanController:
    """Drives the inspect-batch endpoint until the server reports no more work.

    One scan runs at a time per controller. ``run`` is the blocking loop;
    ``start`` runs the same loop on a daemon thread. ``stop`` is cooperative:
    it is honoured at the top of the next iteration (or during the delay
    between passes), never in the middle of an in-flight batch call.
    """

    def __init__(
        self,
        *,
        inspect_fn: Optional[InspectFn] = None,
        refresh_fn: Optional[RefreshFn] = None,
        refresh_source: Optional[bool] = None,
        batch_size: Optional[int] = None,
        pass_delay_s: Optional[float] = None,
        max_passes: Optional[int] = None,
        listeners: Optional[List[UpdateListener]] = None,
    ) -> None:
        if refresh_source is None:
            refresh_source = settings.scan_refresh_sitemap
        self._inspect = inspect_fn or inspect_batch
        self._refresh = (refresh_fn or refresh_sitemap) if refresh_source else None
        self._batch_size = clamp_batch_size(
            batch_size if batch_size is not None else settings.inspect_batch_size
        )
        self._pass_delay_s = max(
            0.0,
            float(pass_delay_s if pass_delay_s is not None else settings.inspect_pass_delay_s),
        )
        self._max_passes = max(
            0, int(max_passes if max_passes is not None else settings.scan_max_passes)
        )
        self._listeners: List[UpdateListener] = list(listeners or [])
        self._lock = threading.Lock()
        self._state = ScanState()
        self._token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None
        self.site_id: Optional[str] = None

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        return self.state.running

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def add_listener(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    def start(
        self,
        site_id: str,
        *,
        token: Optional[CancellationToken] = None,
        scan_id: Optional[str] = None,
    ) -> bool:
        claimed = self._begin(site_id, token)
        if claimed is None:
            return False
        thread = threading.Thread(
            target=self._loop,
            args=(site_id, claimed, scan_id),
            name=f"scan-{site_id}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return True

    def run(
        self,
        site_id: str,
        *,
        token: Optional[CancellationToken] = None,
        scan_id: Optional[str] = None,
    ) -> ScanState:
        claimed = self._begin(site_id, token)
        if claimed is None:
            logger.info("scan.already_running site_id=%s", site_id)
            return self.state
        return self._loop(site_id, claimed, scan_id)

    def stop(self) -> None:
        with self._lock:
            token = self._token if self._state.running else None
        if token is not None:
            token.cancel()
            logger.info("scan.stop_requested site_id=%s", self.site_id)

    def dismiss(self) -> bool:
        with self._lock:
            if self._state.running:
                return False
            self._state = ScanState()
            snapshot = self._state
        self._notify(snapshot)
        return True

    def wait(self, timeout_s: Optional[float] = None) -> bool:
        thread = self._thread
        if thread is not None:
            thread.join(timeout_s)
        return not self.running

    def _begin(
        self, site_id: str, token: Optional[CancellationToken]
    ) -> Optional[CancellationToken]:
        if not site_id or not str(site_id).strip():
            raise ValueError("site_id is required")
        with self._lock:
            if self._state.running:
                return None
            claimed = token or CancellationToken()
            self._token = claimed
            self.site_id = site_id
            self._state = ScanState(running=True)
            snapshot = self._state
        self._notify(snapshot)
        return claimed

    def _update(self, **changes: Any) -> ScanState:
        with self._lock:
            self._state = replace(self._state, **changes)
            snapshot = self._state
        self._notify(snapshot)
        return snapshot

    def _apply_result(self, result: InspectBatchResult) -> ScanState:
        with self._lock:
            current = self._state
            self._state = replace(
                current,
                inspected=current.inspected + max(0, result.inspected),
                remaining=result.remaining,
                passes=current.passes + 1,
            )
            snapshot = self._state
        self._notify(snapshot)
        return snapshot

    def _notify(self, snapshot: ScanState) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("scan.listener_failed site_id=%s", self.site_id)

    def _refresh_source(self, site_id: str) -> None:
        if self._refresh is None:
            return
        try:
            summary = self._refresh(site_id)
        except UpstreamError as exc:
            logger.warning("scan.source_refresh_failed site_id=%s error=%s", site_id, str(exc))
            return
        logger.info("scan.source_refreshed site_id=%s summary=%s", site_id, summary)

    def _loop(
        self, site_id: str, token: CancellationToken, scan_id: Optional[str]
    ) -> ScanState:
        log_tokens = bind_scan_context(scan_id or "-", site_id)
        logger.info(
            "scan.start site_id=%s batch_size=%s pass_delay_s=%s",
            site_id,
            self._batch_size,
            self._pass_delay_s,
        )
        try:
            self._refresh_source(site_id)
            while True:
                if token.cancelled:
                    state = self._update(running=False, cancelled=True)
                    logger.info(
                        "scan.stopped site_id=%s inspected=%s passes=%s",
                        site_id,
                        state.inspected,
                        state.passes,
                    )
                    break
                if self._max_passes and self.state.passes >= self._max_passes:
                    state = self._update(running=False, done=True)
                    logger.warning(
                        "scan.max_passes_reached site_id=%s passes=%s remaining=%s",
                        site_id,
                        state.passes,
                        state.remaining,
                    )
                    break

                result = self._inspect(site_id, self._batch_size)
                state = self._apply_result(result)
                logger.info(
                    "scan.pass site_id=%s pass=%s inspected=%s total_inspected=%s remaining=%s has_more=%s",
                    site_id,
                    state.passes,
                    result.inspected,
                    state.inspected,
                    state.remaining,
                    result.has_more,
                )

                if not result.has_more or result.inspected == 0:
                    if result.has_more:
                        # Quota exhausted or nothing eligible this pass.
                        logger.warning(
                            "scan.zero_inspected site_id=%s remaining=%s",
                            site_id,
                            result.remaining,
                        )
                    state = self._update(running=False, done=True)
                    logger.info(
                        "scan.complete site_id=%s inspected=%s passes=%s",
                        site_id,
                        state.inspected,
                        state.passes,
                    )
                    break

                token.wait(self._pass_delay_s)
        except UpstreamError as exc:
            self._update(running=False, error=str(exc))
            logger.warning("scan.failed site_id=%s error=%s", site_id, str(exc))
        except Exception as exc:
            self._update(running=False, error=str(exc) or exc.__class__.__name__)
            logger.exception("scan.crashed site_id=%s error=%s", site_id, str(exc))
        finally:
            if self.state.running:
                self._update(running=False, error="scan interrupted")
            reset_scan_context(log_tokens)
        return self.state
