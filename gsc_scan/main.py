from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query

from .batch import submit_selection, summarize_submissions
from .cache import urls_key
from .config import settings
from .db import fetch_db_info, validate_versions
from .functions_client import UpstreamError, fetch_urls
from .logging_utils import configure_logging
from .registry import ScanAlreadyRunning, ScanRegistry
from .scan_store import enqueue_scan, get_scan_run, list_scan_runs, request_stop
from .schemas import (
    IndexationVerdict,
    ScanRunRequest,
    SubmitUrlsRequest,
    UrlFilterRule,
    UrlListQuery,
    UrlSource,
)
from .selection import SelectionSet


@lru_cache()
def get_registry() -> ScanRegistry:
    return ScanRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    if not settings.skip_version_check:
        ok, message = validate_versions()
        if not ok:
            raise RuntimeError(message)
    yield
    get_registry().shutdown()


app = FastAPI(title="GSC Scan API", lifespan=lifespan)


def _upstream_http_error(exc: UpstreamError) -> HTTPException:
    return HTTPException(status_code=502, detail=str(exc))


@app.get("/health")
def health() -> dict:
    try:
        info = fetch_db_info()
    except Exception as exc:  # pragma: no cover - safety
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok", "db": info}


@app.post("/sites/{site_id}/scan", status_code=202)
def start_scan_endpoint(
    site_id: UUID, registry: ScanRegistry = Depends(get_registry)
) -> dict:
    try:
        registry.start(str(site_id))
    except ScanAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return registry.view(str(site_id))


@app.get("/sites/{site_id}/scan")
def get_scan_endpoint(
    site_id: UUID, registry: ScanRegistry = Depends(get_registry)
) -> dict:
    return registry.view(str(site_id))


@app.post("/sites/{site_id}/scan/stop")
def stop_scan_endpoint(
    site_id: UUID, registry: ScanRegistry = Depends(get_registry)
) -> dict:
    try:
        registry.stop(str(site_id))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return registry.view(str(site_id))


@app.post("/sites/{site_id}/scan/dismiss")
def dismiss_scan_endpoint(
    site_id: UUID, registry: ScanRegistry = Depends(get_registry)
) -> dict:
    if not registry.dismiss(str(site_id)):
        raise HTTPException(status_code=409, detail="cannot dismiss a running scan")
    return registry.view(str(site_id))


@app.get("/sites/{site_id}/indexation/overview")
def overview_endpoint(
    site_id: UUID, registry: ScanRegistry = Depends(get_registry)
) -> dict:
    try:
        overview = registry.overview(str(site_id))
    except UpstreamError as exc:
        raise _upstream_http_error(exc) from exc
    return overview.model_dump(mode="json")


@app.get("/sites/{site_id}/indexation/urls")
def urls_endpoint(
    site_id: UUID,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    verdict: Optional[IndexationVerdict] = None,
    search: Optional[str] = None,
    filter_rule: Optional[UrlFilterRule] = None,
    filter_value: Optional[str] = None,
    source: Optional[UrlSource] = None,
    registry: ScanRegistry = Depends(get_registry),
) -> dict:
    query = UrlListQuery(
        page=page,
        per_page=per_page,
        verdict=verdict,
        search=search,
        filter_rule=filter_rule,
        filter_value=filter_value,
        source=source,
    )
    key = urls_key(str(site_id), *query.cache_key_parts())
    try:
        result = registry.cache.get(key, lambda: fetch_urls(str(site_id), query))
    except UpstreamError as exc:
        raise _upstream_http_error(exc) from exc
    return result.model_dump(mode="json")


@app.post("/sites/{site_id}/indexation/submit")
def submit_endpoint(site_id: UUID, payload: SubmitUrlsRequest) -> dict:
    selection = SelectionSet(payload.urls, page_ids=payload.urls)
    outcome = submit_selection(str(site_id), selection)
    return {
        **summarize_submissions(outcome),
        "chunks": [
            {
                "urls": len(result.item),
                "ok": result.ok,
                "error": result.error,
                "result": result.value.model_dump(mode="json") if result.value else None,
            }
            for result in outcome.results
        ],
    }


@app.post("/sites/{site_id}/scan-runs", status_code=202)
def enqueue_scan_run_endpoint(site_id: UUID, payload: Optional[ScanRunRequest] = None) -> dict:
    trigger = payload.trigger if payload else "api"
    scan_run_id = enqueue_scan(str(site_id), trigger=trigger)
    return get_scan_run(scan_run_id)


@app.get("/scan-runs")
def list_scan_runs_endpoint(
    site_id: Optional[str] = None,
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
) -> dict:
    allowed = {"queued", "running", "done", "stopped", "failed"}
    if status is not None and status not in allowed:
        raise HTTPException(status_code=400, detail="invalid scan run status filter")
    return list_scan_runs(site_id=site_id, status=status, limit=limit)


@app.get("/scan-runs/{scan_run_id}")
def get_scan_run_endpoint(scan_run_id: UUID) -> dict:
    try:
        return get_scan_run(scan_run_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/scan-runs/{scan_run_id}/stop")
def stop_scan_run_endpoint(scan_run_id: UUID) -> dict:
    try:
        run = get_scan_run(scan_run_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not request_stop(scan_run_id):
        raise HTTPException(
            status_code=409, detail=f"scan run already {run['status']}"
        )
    return get_scan_run(scan_run_id)
