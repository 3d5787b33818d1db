from __future__ import annotations

import contextvars
import logging
from typing import Dict, Optional, Tuple

_scan_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "scan_id", default="-"
)
_site_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "site_id", default="-"
)
_configured = False

ScanContextTokens = Tuple[contextvars.Token[str], contextvars.Token[str]]

LOG_FORMAT = (
    "%(asctime)s %(levelname)s [%(name)s] "
    "[site=%(site_id)s scan=%(scan_id)s] %(message)s"
)


class ScanContextFilter(logging.Filter):
    """Stamps the site and scan bound to the current thread onto each record.

    Scan loops run on their own threads, so records from the API or the
    poller thread carry ``-`` unless they bound a context themselves.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "scan_id"):
            record.scan_id = _scan_id_var.get("-")
        if not hasattr(record, "site_id"):
            record.site_id = _site_id_var.get("-")
        return True


def configure_logging(level: str = "INFO") -> None:
    global _configured
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not _configured:
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(handler)
        for handler in root.handlers:
            handler.addFilter(ScanContextFilter())
        _configured = True

    root.setLevel(numeric_level)
    # httpx logs every request at INFO; one line per batch call is noise.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))


def bind_scan_context(scan_id: str, site_id: str) -> ScanContextTokens:
    return _scan_id_var.set(scan_id), _site_id_var.set(site_id)


def reset_scan_context(tokens: ScanContextTokens) -> None:
    scan_token, site_token = tokens
    _site_id_var.reset(site_token)
    _scan_id_var.reset(scan_token)


def get_scan_context() -> Dict[str, str]:
    return {"scan_id": _scan_id_var.get("-"), "site_id": _site_id_var.get("-")}


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
