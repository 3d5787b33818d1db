from __future__ import annotations

from redis import Redis
from rq import Worker

from gsc_scan.config import settings
from gsc_scan.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    connection = Redis.from_url(settings.redis_url)
    logger.info(
        "scan_worker.start queue=%s redis=%s",
        settings.scan_queue_name,
        settings.redis_url,
    )
    worker = Worker([settings.scan_queue_name], connection=connection)
    worker.work()


if __name__ == "__main__":
    main()
