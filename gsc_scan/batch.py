from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from .config import settings
from .functions_client import submit_urls
from .logging_utils import get_logger
from .schemas import MAX_SUBMIT_URLS, SubmitResult, SubmitUrlsRequest
from .selection import SelectionSet

ItemT = TypeVar("ItemT")
ValueT = TypeVar("ValueT")
logger = get_logger(__name__)


@dataclass(frozen=True)
class ItemResult(Generic[ItemT, ValueT]):
    item: ItemT
    value: Optional[ValueT] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class BatchOutcome(Generic[ItemT, ValueT]):
    results: List[ItemResult[ItemT, ValueT]]

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    @property
    def errors(self) -> List[ItemResult[ItemT, ValueT]]:
        return [result for result in self.results if not result.ok]


def run_each(
    items: Sequence[ItemT], fn: Callable[[ItemT], ValueT], *, label: str = "batch"
) -> BatchOutcome[ItemT, ValueT]:
    """Apply ``fn`` to every item, collecting failures instead of stopping.

    Completed items are never rolled back when a later one fails.
    """
    results: List[ItemResult[ItemT, ValueT]] = []
    for index, item in enumerate(items):
        try:
            value = fn(item)
        except Exception as exc:
            logger.warning("%s.item_failed index=%s error=%s", label, index, str(exc))
            results.append(ItemResult(item=item, error=str(exc) or exc.__class__.__name__))
            continue
        results.append(ItemResult(item=item, value=value))
    outcome = BatchOutcome(results=results)
    logger.info(
        "%s.complete items=%s succeeded=%s failed=%s",
        label,
        len(results),
        outcome.succeeded,
        outcome.failed,
    )
    return outcome


def _chunks(values: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(values[start : start + size]) for start in range(0, len(values), size)]


def submit_selection(
    site_id: str,
    selection: SelectionSet,
    *,
    chunk_size: Optional[int] = None,
    submit_fn: Optional[Callable[[str, Sequence[str]], SubmitResult]] = None,
) -> BatchOutcome[List[str], SubmitResult]:
    submit = submit_fn or submit_urls
    size = chunk_size or settings.submit_chunk_size
    if size <= 0:
        raise ValueError("chunk size must be > 0")
    size = min(size, MAX_SUBMIT_URLS)
    urls = [str(item_id) for item_id in selection]
    if not urls:
        return BatchOutcome(results=[])

    chunks = _chunks(urls, size)
    # Reject malformed URLs before anything is sent.
    for chunk in chunks:
        SubmitUrlsRequest(urls=chunk)

    outcome = run_each(
        chunks,
        lambda chunk: submit(site_id, chunk),
        label="indexation_submit",
    )
    selection.clear()
    return outcome


def summarize_submissions(outcome: BatchOutcome[List[str], SubmitResult]) -> dict:
    summary = {"submitted": 0, "queued": 0, "failed": 0, "chunks_failed": outcome.failed}
    for result in outcome.results:
        if result.ok and result.value is not None:
            summary["submitted"] += result.value.submitted
            summary["queued"] += result.value.queued
            summary["failed"] += result.value.failed
        else:
            summary["failed"] += len(result.item)
    return summary
