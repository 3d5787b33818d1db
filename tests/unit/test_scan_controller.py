from __future__ import annotations

import threading
import time
from typing import Any, List

import pytest

from gsc_scan.functions_client import UpstreamError
from gsc_scan.scan import CancellationToken, ScanController, ScanState
from gsc_scan.schemas import InspectBatchResult


class _ScriptedInspect:
    def __init__(self, responses: List[Any]) -> None:
        self._responses = list(responses)
        self.calls: List[tuple] = []

    def __call__(self, site_id: str, batch_size: int) -> InspectBatchResult:
        self.calls.append((site_id, batch_size))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _result(inspected: int, has_more: bool, remaining: int | None = None) -> InspectBatchResult:
    return InspectBatchResult(inspected=inspected, has_more=has_more, remaining=remaining)


def _controller(inspect: _ScriptedInspect, **kwargs: Any) -> ScanController:
    kwargs.setdefault("pass_delay_s", 0)
    kwargs.setdefault("refresh_source", False)
    return ScanController(inspect_fn=inspect, **kwargs)


def test_run_accumulates_until_server_reports_no_more_work() -> None:
    inspect = _ScriptedInspect([_result(20, True, 15), _result(15, False, 0)])
    states: List[ScanState] = []
    controller = _controller(inspect, listeners=[states.append])

    final = controller.run("site-1")

    assert final.inspected == 35
    assert final.passes == 2
    assert final.done is True
    assert final.running is False
    assert final.error is None
    assert final.remaining == 0
    assert inspect.calls == [("site-1", 20), ("site-1", 20)]
    assert states[0] == ScanState(running=True)


def test_zero_inspected_with_more_work_ends_the_scan() -> None:
    inspect = _ScriptedInspect([_result(0, True, 12)])
    controller = _controller(inspect)

    final = controller.run("site-1")

    assert final.done is True
    assert final.passes == 1
    assert final.inspected == 0
    assert final.remaining == 12
    assert len(inspect.calls) == 1


def test_upstream_error_stops_without_further_calls() -> None:
    inspect = _ScriptedInspect([_result(10, True), UpstreamError("quota exceeded", 429)])
    controller = _controller(inspect)

    final = controller.run("site-1")

    assert final.error == "quota exceeded"
    assert final.running is False
    assert final.done is False
    assert final.inspected == 10
    assert len(inspect.calls) == 2


def test_unexpected_exception_becomes_error_state() -> None:
    inspect = _ScriptedInspect([KeyError("boom")])
    controller = _controller(inspect)

    final = controller.run("site-1")

    assert final.running is False
    assert final.error


def test_inspected_never_decreases_across_updates() -> None:
    inspect = _ScriptedInspect(
        [_result(5, True, 30), _result(0, True, 30)]
    )
    seen: List[int] = []
    controller = _controller(inspect, listeners=[lambda state: seen.append(state.inspected)])

    controller.run("site-1")

    assert seen == sorted(seen)
    assert seen[-1] == 5


def test_stop_between_passes_cancels_the_scan() -> None:
    token = CancellationToken()
    responses = [_result(10, True, 90), _result(10, True, 80), _result(10, True, 70)]
    inspect = _ScriptedInspect(responses)

    def stop_after_first_pass(state: ScanState) -> None:
        if state.passes == 1:
            token.cancel()

    controller = _controller(inspect, listeners=[stop_after_first_pass])
    final = controller.run("site-1", token=token)

    assert final.cancelled is True
    assert final.running is False
    assert final.done is False
    assert final.error is None
    assert final.inspected == 10
    assert len(inspect.calls) == 1


def test_max_passes_guard_ends_an_endless_scan() -> None:
    inspect = _ScriptedInspect([_result(1, True)] * 5)
    controller = _controller(inspect, max_passes=3)

    final = controller.run("site-1")

    assert final.done is True
    assert final.passes == 3
    assert len(inspect.calls) == 3


def test_refresh_failure_is_not_fatal() -> None:
    refreshed: List[str] = []

    def failing_refresh(site_id: str) -> None:
        refreshed.append(site_id)
        raise UpstreamError("sitemap unreachable")

    inspect = _ScriptedInspect([_result(3, False, 0)])
    controller = ScanController(
        inspect_fn=inspect,
        refresh_fn=failing_refresh,
        refresh_source=True,
        pass_delay_s=0,
    )

    final = controller.run("site-1")

    assert refreshed == ["site-1"]
    assert final.done is True
    assert final.inspected == 3


def test_listener_failure_does_not_abort_the_scan() -> None:
    def broken_listener(state: ScanState) -> None:
        raise RuntimeError("listener bug")

    inspect = _ScriptedInspect([_result(4, False, 0)])
    controller = _controller(inspect, listeners=[broken_listener])

    final = controller.run("site-1")

    assert final.done is True
    assert final.inspected == 4


def test_batch_size_is_clamped() -> None:
    inspect = _ScriptedInspect([_result(1, False, 0)])
    controller = _controller(inspect, batch_size=500)

    controller.run("site-1")

    assert controller.batch_size == 50
    assert inspect.calls == [("site-1", 50)]


def test_empty_site_id_is_rejected() -> None:
    controller = _controller(_ScriptedInspect([]))
    with pytest.raises(ValueError):
        controller.run("  ")


def test_start_is_a_noop_while_running_and_dismiss_waits_for_finish() -> None:
    release = threading.Event()
    entered = threading.Event()

    def blocking_inspect(site_id: str, batch_size: int) -> InspectBatchResult:
        entered.set()
        release.wait(5)
        return _result(7, False, 0)

    controller = ScanController(
        inspect_fn=blocking_inspect, refresh_source=False, pass_delay_s=0
    )

    assert controller.start("site-1") is True
    assert entered.wait(5)
    assert controller.start("site-1") is False
    assert controller.dismiss() is False

    release.set()
    assert controller.wait(5) is True
    assert controller.state.done is True
    assert controller.state.inspected == 7

    assert controller.dismiss() is True
    assert controller.state == ScanState()


def test_stop_during_pass_delay_is_honoured() -> None:
    inspect = _ScriptedInspect([_result(10, True, 10), _result(10, False, 0)])
    controller = ScanController(
        inspect_fn=inspect, refresh_source=False, pass_delay_s=30
    )

    controller.start("site-1")
    for _ in range(500):
        if controller.state.passes == 1:
            break
        time.sleep(0.01)
    controller.stop()

    assert controller.wait(5) is True
    assert controller.state.cancelled is True
    assert len(inspect.calls) == 1


def test_token_wait_returns_cancelled_flag() -> None:
    token = CancellationToken()
    assert token.wait(0) is False
    token.cancel()
    assert token.wait(0.5) is True
    assert token.cancelled is True
