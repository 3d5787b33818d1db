from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional, Sequence

from .config import settings
from .scan import ScanState

ViewKind = Literal["error", "done", "running"]

SCAN_MESSAGES: Sequence[str] = (
    "Connecting to Google Search Console...",
    "Fetching sitemap URLs...",
    "Inspecting pages...",
    "Analysing indexation status...",
    "Checking robots.txt...",
    "Updating the database...",
)


@dataclass(frozen=True)
class ProgressView:
    kind: ViewKind
    title: str
    detail: str
    inspected: int
    remaining: Optional[int]
    passes: int
    percent: Optional[int]

    @property
    def indeterminate(self) -> bool:
        return self.kind == "running" and self.percent is None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "detail": self.detail,
            "inspected": self.inspected,
            "remaining": self.remaining,
            "passes": self.passes,
            "percent": self.percent,
            "indeterminate": self.indeterminate,
        }


def _plural(count: int, word: str, plural: Optional[str] = None) -> str:
    if count != 1:
        return f"{count} {plural or word + 's'}"
    return f"{count} {word}"


def compute_total(state: ScanState, total_urls: Optional[int] = None) -> int:
    if total_urls is not None:
        return max(0, int(total_urls))
    return state.inspected + (state.remaining or 0)


def compute_percent(state: ScanState, total_urls: Optional[int] = None) -> Optional[int]:
    total = compute_total(state, total_urls)
    if total <= 0:
        return None
    # Half-up rounding, so 12.5% shows as 13%.
    return min(100, math.floor(state.inspected * 100 / total + 0.5))


def build_view(state: ScanState, total_urls: Optional[int] = None) -> Optional[ProgressView]:
    """Map a scan state onto the error, done or running view.

    Returns None for an idle or dismissed scan (including one the user
    stopped).
    """
    common = {
        "inspected": state.inspected,
        "remaining": state.remaining,
        "passes": state.passes,
    }
    if state.error:
        return ProgressView(
            kind="error",
            title="Inspection failed",
            detail=state.error,
            percent=None,
            **common,
        )
    if state.done:
        return ProgressView(
            kind="done",
            title="Inspection complete",
            detail=(
                f"{_plural(state.inspected, 'URL')} inspected in "
                f"{_plural(state.passes, 'pass', 'passes')}"
            ),
            percent=compute_percent(state, total_urls),
            **common,
        )
    if state.running:
        remaining = "..." if state.remaining is None else str(state.remaining)
        return ProgressView(
            kind="running",
            title="Full inspection running",
            detail=f"inspected={state.inspected} remaining={remaining} passes={state.passes}",
            percent=compute_percent(state, total_urls),
            **common,
        )
    return None


class StatusTicker:
    """Rotates through cosmetic status messages on a fixed interval."""

    def __init__(
        self,
        messages: Sequence[str] = SCAN_MESSAGES,
        interval_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not messages:
            raise ValueError("ticker needs at least one message")
        self._messages = list(messages)
        self._interval_s = settings.ticker_interval_s if interval_s is None else interval_s
        self._clock = clock
        self._started_at = clock()

    def message(self) -> str:
        if self._interval_s <= 0:
            return self._messages[0]
        elapsed = max(0.0, self._clock() - self._started_at)
        index = int(elapsed // self._interval_s) % len(self._messages)
        return self._messages[index]


def render_text(view: Optional[ProgressView], ticker_message: str = "") -> str:
    if view is None:
        return ""
    if view.kind == "error":
        return f"[error] {view.title}: {view.detail}"
    if view.kind == "done":
        return f"[done] {view.title}: {view.detail}"
    bar = "[....]" if view.percent is None else f"[{view.percent:3d}%]"
    line = f"{bar} {view.title} {view.detail}"
    if ticker_message:
        line = f"{line} | {ticker_message}"
    return line
