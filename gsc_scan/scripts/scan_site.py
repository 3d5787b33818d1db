from __future__ import annotations

import argparse
import sys

from gsc_scan.cache import QueryCache, overview_key
from gsc_scan.config import settings
from gsc_scan.functions_client import UpstreamError, fetch_overview
from gsc_scan.logging_utils import configure_logging, get_logger
from gsc_scan.poller import BackgroundPoller
from gsc_scan.progress import StatusTicker, build_view, render_text
from gsc_scan.scan import ScanController


def _total_urls(cache: QueryCache, site_id: str, enabled: bool):
    if not enabled:
        return None
    try:
        overview = cache.get(overview_key(site_id), lambda: fetch_overview(site_id))
    except UpstreamError:
        return None
    return overview.total or None


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Run a full inspection scan for one GSC site in the foreground."
    )
    parser.add_argument("site_id", help="GSC site id to scan.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.inspect_batch_size,
        help="URLs per inspect-batch call (1-50).",
    )
    parser.add_argument(
        "--pass-delay",
        type=float,
        default=settings.inspect_pass_delay_s,
        help="Seconds to wait between batch calls.",
    )
    parser.add_argument(
        "--max-passes",
        type=int,
        default=settings.scan_max_passes,
        help="Stop after this many passes (0 = until the server reports no more work).",
    )
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        help="Skip the sitemap refresh before the first pass.",
    )
    parser.add_argument(
        "--use-overview",
        action="store_true",
        help="Use the indexation overview total for the progress percentage.",
    )
    parser.add_argument(
        "--record",
        action="store_true",
        help="Record the run in the scan_runs table.",
    )
    parser.add_argument(
        "--refresh-seconds",
        type=float,
        default=1.0,
        help="How often to print progress.",
    )
    args = parser.parse_args()

    if args.refresh_seconds <= 0:
        raise SystemExit("--refresh-seconds must be > 0")

    listeners = []
    scan_id = None
    if args.record:
        from gsc_scan.scan_store import ScanRecorder, create_scan_run

        scan_run_id = create_scan_run(args.site_id, "cli")
        scan_id = str(scan_run_id)
        listeners.append(ScanRecorder(scan_run_id))

    controller = ScanController(
        batch_size=args.batch_size,
        pass_delay_s=args.pass_delay,
        max_passes=args.max_passes,
        refresh_source=not args.no_refresh,
        listeners=listeners,
    )
    cache = QueryCache()
    poller = BackgroundPoller.for_site(cache, args.site_id)
    ticker = StatusTicker()

    poller.start()
    controller.start(args.site_id, scan_id=scan_id)
    try:
        while True:
            try:
                finished = controller.wait(args.refresh_seconds)
            except KeyboardInterrupt:
                logger.info("scan_site.interrupt site_id=%s", args.site_id)
                controller.stop()
                continue
            state = controller.state
            view = build_view(state, total_urls=_total_urls(cache, args.site_id, args.use_overview))
            line = render_text(view, ticker.message() if state.running else "")
            if line:
                print(line, flush=True)
            if finished:
                break
    finally:
        poller.stop()

    state = controller.state
    if state.cancelled:
        print(f"[stopped] inspected={state.inspected} passes={state.passes}", flush=True)
    if state.error:
        sys.exit(1)


if __name__ == "__main__":
    main()
