from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from redis import Redis
from rq import Queue, Retry, get_current_job
from sqlalchemy import text

from .config import settings
from .db import engine
from .logging_utils import get_logger
from .scan import CancellationToken, ScanController, ScanState
from .schemas import ScanTrigger

SCAN_RUN_STATUS = Literal["queued", "running", "done", "stopped", "failed"]
STATUS_QUEUED: SCAN_RUN_STATUS = "queued"
STATUS_RUNNING: SCAN_RUN_STATUS = "running"
STATUS_DONE: SCAN_RUN_STATUS = "done"
STATUS_STOPPED: SCAN_RUN_STATUS = "stopped"
STATUS_FAILED: SCAN_RUN_STATUS = "failed"
TERMINAL_STATUSES = {STATUS_DONE, STATUS_STOPPED, STATUS_FAILED}

_SCAN_RUN_COLUMNS = """
    scan_run_id, site_id, trigger, status, inspected, remaining, passes,
    error, stop_requested, created_at, updated_at, started_at, completed_at
"""
logger = get_logger(__name__)


def status_for_state(state: ScanState) -> SCAN_RUN_STATUS:
    if state.error:
        return STATUS_FAILED
    if state.done:
        return STATUS_DONE
    if state.cancelled:
        return STATUS_STOPPED
    if state.running:
        return STATUS_RUNNING
    return STATUS_QUEUED


def _serialize_run(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "scan_run_id": str(row["scan_run_id"]),
        "site_id": row["site_id"],
        "trigger": row["trigger"],
        "status": row["status"],
        "inspected": row["inspected"],
        "remaining": row["remaining"],
        "passes": row["passes"],
        "error": row["error"],
        "stop_requested": row["stop_requested"],
        "created_at": row["created_at"].isoformat() if row["created_at"] else None,
        "updated_at": row["updated_at"].isoformat() if row["updated_at"] else None,
        "started_at": row["started_at"].isoformat() if row["started_at"] else None,
        "completed_at": row["completed_at"].isoformat()
        if row["completed_at"]
        else None,
    }


def create_scan_run(site_id: str, trigger: ScanTrigger) -> UUID:
    with engine.begin() as conn:
        scan_run_id = conn.execute(
            text(
                """
                INSERT INTO scan_runs (site_id, trigger, status)
                VALUES (:site_id, :trigger, :status)
                RETURNING scan_run_id
                """
            ),
            {"site_id": site_id, "trigger": trigger, "status": STATUS_QUEUED},
        ).scalar_one()
    logger.info(
        "scan_run.created scan_run_id=%s site_id=%s trigger=%s",
        scan_run_id,
        site_id,
        trigger,
    )
    return scan_run_id


def record_scan_state(scan_run_id: UUID, state: ScanState) -> None:
    status = status_for_state(state)
    set_clauses = [
        "status = :status",
        "inspected = :inspected",
        "remaining = :remaining",
        "passes = :passes",
        "error = :error",
        "updated_at = now()",
        "started_at = COALESCE(started_at, now())",
    ]
    if status in TERMINAL_STATUSES:
        set_clauses.append("completed_at = now()")

    with engine.begin() as conn:
        conn.execute(
            text(
                f"""
                UPDATE scan_runs
                SET {", ".join(set_clauses)}
                WHERE scan_run_id = :scan_run_id
                """
            ),
            {
                "scan_run_id": scan_run_id,
                "status": status,
                "inspected": state.inspected,
                "remaining": state.remaining,
                "passes": state.passes,
                "error": state.error,
            },
        )


def mark_scan_run_failed(scan_run_id: UUID, error: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                UPDATE scan_runs
                SET status = :status, error = :error,
                    updated_at = now(), completed_at = now()
                WHERE scan_run_id = :scan_run_id
                """
            ),
            {"scan_run_id": scan_run_id, "status": STATUS_FAILED, "error": error},
        )


def request_stop(scan_run_id: UUID) -> bool:
    with engine.begin() as conn:
        row = conn.execute(
            text(
                """
                UPDATE scan_runs
                SET stop_requested = TRUE, updated_at = now()
                WHERE scan_run_id = :scan_run_id
                  AND status IN ('queued', 'running')
                RETURNING scan_run_id
                """
            ),
            {"scan_run_id": scan_run_id},
        ).fetchone()
    return row is not None


def is_stop_requested(scan_run_id: UUID) -> bool:
    with engine.connect() as conn:
        value = conn.execute(
            text("SELECT stop_requested FROM scan_runs WHERE scan_run_id = :scan_run_id"),
            {"scan_run_id": scan_run_id},
        ).scalar()
    return bool(value)


def get_scan_run(scan_run_id: UUID) -> Dict[str, Any]:
    with engine.connect() as conn:
        row = conn.execute(
            text(
                f"""
                SELECT {_SCAN_RUN_COLUMNS}
                FROM scan_runs
                WHERE scan_run_id = :scan_run_id
                """
            ),
            {"scan_run_id": scan_run_id},
        ).mappings().first()
    if row is None:
        raise KeyError(f"scan run not found: {scan_run_id}")
    return _serialize_run(dict(row))


def list_scan_runs(
    *,
    site_id: Optional[str] = None,
    status: Optional[SCAN_RUN_STATUS] = None,
    limit: int = 50,
) -> Dict[str, Any]:
    filters: List[str] = []
    params: Dict[str, Any] = {"limit": limit}
    if site_id is not None:
        filters.append("site_id = :site_id")
        params["site_id"] = site_id
    if status is not None:
        filters.append("status = :status")
        params["status"] = status
    where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""

    with engine.connect() as conn:
        rows = conn.execute(
            text(
                f"""
                SELECT {_SCAN_RUN_COLUMNS}
                FROM scan_runs
                {where_clause}
                ORDER BY created_at DESC, scan_run_id DESC
                LIMIT :limit
                """
            ),
            params,
        ).mappings()
        items = [_serialize_run(dict(row)) for row in rows]
    return {"items": items}


class StoreCancellationToken(CancellationToken):
    """Also honours a stop requested through ``scan_runs.stop_requested``."""

    def __init__(self, scan_run_id: UUID) -> None:
        super().__init__()
        self.scan_run_id = scan_run_id

    @property
    def cancelled(self) -> bool:
        if super().cancelled:
            return True
        if is_stop_requested(self.scan_run_id):
            self.cancel()
            return True
        return False


class ScanRecorder:
    """Scan listener that persists every state change of one run."""

    def __init__(self, scan_run_id: UUID) -> None:
        self.scan_run_id = scan_run_id

    def __call__(self, state: ScanState) -> None:
        record_scan_state(self.scan_run_id, state)


def _redis() -> Redis:
    return Redis.from_url(settings.redis_url)


def _build_retry_policy(max_attempts: int, base_backoff_s: int) -> Optional[Retry]:
    normalized_attempts = max(1, int(max_attempts))
    max_retries = max(0, normalized_attempts - 1)
    if max_retries == 0:
        return None
    base = max(1, int(base_backoff_s))
    intervals = [base * (2 ** idx) for idx in range(max_retries)]
    return Retry(max=max_retries, interval=intervals)


def _retries_left() -> int:
    job = get_current_job()
    if job is None:
        return 0
    return int(job.retries_left or 0)


def enqueue_scan(site_id: str, trigger: ScanTrigger = "schedule") -> UUID:
    scan_run_id = create_scan_run(site_id, trigger)
    queue = Queue(settings.scan_queue_name, connection=_redis())
    retry = _build_retry_policy(
        settings.scan_job_max_attempts, settings.scan_job_retry_backoff_s
    )
    queue.enqueue(
        "gsc_scan.scan_store.process_scan_job",
        str(scan_run_id),
        job_id=str(scan_run_id),
        retry=retry,
        job_timeout=-1,
    )
    logger.info(
        "scan_run.enqueued scan_run_id=%s site_id=%s queue=%s",
        scan_run_id,
        site_id,
        settings.scan_queue_name,
    )
    return scan_run_id


def process_scan_job(scan_run_id: str) -> Dict[str, Any]:
    run_uuid = UUID(scan_run_id)
    run = get_scan_run(run_uuid)
    if run["status"] in TERMINAL_STATUSES:
        logger.info(
            "scan_run.skip_terminal scan_run_id=%s status=%s", scan_run_id, run["status"]
        )
        return run

    controller = ScanController(listeners=[ScanRecorder(run_uuid)])
    try:
        state = controller.run(
            run["site_id"],
            token=StoreCancellationToken(run_uuid),
            scan_id=scan_run_id,
        )
    except Exception as exc:
        retries_left = _retries_left()
        if retries_left:
            # Left non-terminal so the retried job runs the scan again.
            logger.warning(
                "scan_run.retry_pending scan_run_id=%s retries_left=%s error=%s",
                scan_run_id,
                retries_left,
                str(exc),
            )
        else:
            mark_scan_run_failed(run_uuid, str(exc))
        logger.exception("scan_run.crashed scan_run_id=%s error=%s", scan_run_id, str(exc))
        raise

    logger.info(
        "scan_run.finished scan_run_id=%s status=%s inspected=%s passes=%s",
        scan_run_id,
        status_for_state(state),
        state.inspected,
        state.passes,
    )
    return get_scan_run(run_uuid)
