from __future__ import annotations

from typing import Any, List
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from gsc_scan.scan import ScanState
from gsc_scan.schemas import InspectBatchResult


class _FakeQueue:
    enqueued: List[dict[str, Any]] = []

    def __init__(self, name: str, connection: Any = None) -> None:
        self.name = name

    def enqueue(self, func: str, *args: Any, **kwargs: Any) -> None:
        _FakeQueue.enqueued.append({"queue": self.name, "func": func, "args": args, **kwargs})


def _quiet_scan_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    import gsc_scan.scan as scan_module

    monkeypatch.setattr(scan_module.settings, "inspect_pass_delay_s", 0)
    monkeypatch.setattr(scan_module.settings, "scan_refresh_sitemap", False)


def test_record_scan_state_tracks_lifecycle(client: TestClient) -> None:
    import gsc_scan.scan_store as scan_store

    site_id = f"site-{uuid4().hex[:8]}"
    scan_run_id = scan_store.create_scan_run(site_id, "cli")

    run = scan_store.get_scan_run(scan_run_id)
    assert run["status"] == "queued"
    assert run["started_at"] is None

    scan_store.record_scan_state(
        scan_run_id, ScanState(running=True, inspected=20, remaining=15, passes=1)
    )
    run = scan_store.get_scan_run(scan_run_id)
    assert run["status"] == "running"
    assert run["inspected"] == 20
    assert run["started_at"] is not None
    assert run["completed_at"] is None

    scan_store.record_scan_state(
        scan_run_id, ScanState(done=True, inspected=35, remaining=0, passes=2)
    )
    run = scan_store.get_scan_run(scan_run_id)
    assert run["status"] == "done"
    assert run["passes"] == 2
    assert run["completed_at"] is not None

    assert scan_store.request_stop(scan_run_id) is False

    listed = client.get("/scan-runs", params={"site_id": site_id}).json()["items"]
    assert [item["scan_run_id"] for item in listed] == [str(scan_run_id)]


def test_stop_request_is_seen_by_store_token(client: TestClient) -> None:
    import gsc_scan.scan_store as scan_store

    scan_run_id = scan_store.create_scan_run(f"site-{uuid4().hex[:8]}", "api")
    token = scan_store.StoreCancellationToken(scan_run_id)
    assert token.cancelled is False

    response = client.post(f"/scan-runs/{scan_run_id}/stop")
    assert response.status_code == 200
    assert response.json()["stop_requested"] is True
    assert token.cancelled is True

    assert client.get(f"/scan-runs/{uuid4()}").status_code == 404
    assert client.post(f"/scan-runs/{uuid4()}/stop").status_code == 404


def test_process_scan_job_runs_loop_and_persists(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    import gsc_scan.scan as scan_module
    import gsc_scan.scan_store as scan_store

    _quiet_scan_settings(monkeypatch)
    responses = [
        InspectBatchResult(inspected=20, remaining=15, has_more=True),
        InspectBatchResult(inspected=15, remaining=0, has_more=False),
    ]
    monkeypatch.setattr(scan_module, "inspect_batch", lambda site_id, size: responses.pop(0))

    scan_run_id = scan_store.create_scan_run(f"site-{uuid4().hex[:8]}", "schedule")
    run = scan_store.process_scan_job(str(scan_run_id))

    assert run["status"] == "done"
    assert run["inspected"] == 35
    assert run["passes"] == 2
    assert run["remaining"] == 0

    # A terminal run is not scanned again.
    again = scan_store.process_scan_job(str(scan_run_id))
    assert again["status"] == "done"
    assert responses == []


def test_process_scan_job_honours_stop_flag(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    import gsc_scan.scan as scan_module
    import gsc_scan.scan_store as scan_store

    _quiet_scan_settings(monkeypatch)
    calls: List[str] = []
    scan_run_id = scan_store.create_scan_run(f"site-{uuid4().hex[:8]}", "schedule")

    def inspect_then_stop(site_id: str, size: int) -> InspectBatchResult:
        calls.append(site_id)
        scan_store.request_stop(scan_run_id)
        return InspectBatchResult(inspected=5, remaining=100, has_more=True)

    monkeypatch.setattr(scan_module, "inspect_batch", inspect_then_stop)

    run = scan_store.process_scan_job(str(scan_run_id))

    assert run["status"] == "stopped"
    assert run["inspected"] == 5
    assert len(calls) == 1


def test_process_scan_job_records_upstream_failure(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    import gsc_scan.scan as scan_module
    import gsc_scan.scan_store as scan_store

    _quiet_scan_settings(monkeypatch)

    def failing(site_id: str, size: int) -> InspectBatchResult:
        raise scan_module.UpstreamError("GSC token expired", 401)

    monkeypatch.setattr(scan_module, "inspect_batch", failing)

    scan_run_id = scan_store.create_scan_run(f"site-{uuid4().hex[:8]}", "schedule")
    run = scan_store.process_scan_job(str(scan_run_id))

    assert run["status"] == "failed"
    assert run["error"] == "GSC token expired"
    assert run["completed_at"] is not None


def test_enqueue_endpoint_creates_queued_run(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    import gsc_scan.db as db_module
    import gsc_scan.scan_store as scan_store

    _FakeQueue.enqueued = []
    monkeypatch.setattr(scan_store, "Queue", _FakeQueue)
    site_id = uuid4()

    response = client.post(f"/sites/{site_id}/scan-runs", json={"trigger": "schedule"})
    assert response.status_code == 202
    payload = response.json()
    assert payload["status"] == "queued"
    assert payload["trigger"] == "schedule"
    assert _FakeQueue.enqueued[0]["func"] == "gsc_scan.scan_store.process_scan_job"
    assert _FakeQueue.enqueued[0]["job_id"] == payload["scan_run_id"]

    with db_module.engine.connect() as conn:
        count = conn.execute(
            text("SELECT count(*) FROM scan_runs WHERE site_id = :site_id"),
            {"site_id": str(site_id)},
        ).scalar_one()
    assert count == 1
