from __future__ import annotations

import argparse
import time
from typing import Dict, List

from gsc_scan.config import settings
from gsc_scan.logging_utils import configure_logging, get_logger
from gsc_scan.scan_store import enqueue_scan, list_scan_runs


def enqueue_scheduled_scans(site_ids: List[str]) -> Dict[str, int]:
    logger = get_logger(__name__)
    queued = 0
    skipped = 0
    for site_id in site_ids:
        active = list_scan_runs(site_id=site_id, status="running", limit=1)["items"]
        active += list_scan_runs(site_id=site_id, status="queued", limit=1)["items"]
        if active:
            skipped += 1
            logger.info(
                "scan_scheduler.skip_active site_id=%s scan_run_id=%s",
                site_id,
                active[0]["scan_run_id"],
            )
            continue
        enqueue_scan(site_id, trigger="schedule")
        queued += 1
    return {"sites": len(site_ids), "queued": queued, "skipped": skipped}


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Enqueue full inspection scans for the configured GSC sites."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Enqueue one round of scans and exit.",
    )
    parser.add_argument(
        "--poll-seconds",
        type=int,
        default=settings.scheduler_poll_seconds,
        help="Seconds between rounds when not using --once.",
    )
    parser.add_argument(
        "--site",
        action="append",
        dest="sites",
        default=None,
        help="Site id to scan (repeatable). Defaults to SCHEDULED_SITE_IDS.",
    )
    args = parser.parse_args()

    if args.poll_seconds <= 0:
        raise SystemExit("--poll-seconds must be > 0")
    site_ids = args.sites or settings.scheduled_sites()
    if not site_ids:
        raise SystemExit("no sites configured: pass --site or set SCHEDULED_SITE_IDS")

    while True:
        try:
            summary = enqueue_scheduled_scans(site_ids)
            logger.info(
                "scan_scheduler.round sites=%s queued=%s skipped=%s",
                summary["sites"],
                summary["queued"],
                summary["skipped"],
            )
        except Exception as exc:  # pragma: no cover - runtime hardening for service loop
            logger.exception("scan_scheduler.round_failed error=%s", str(exc))
            if args.once:
                raise
        if args.once:
            return
        time.sleep(args.poll_seconds)


if __name__ == "__main__":
    main()
