import re
from typing import Dict, Tuple

from sqlalchemy import create_engine, text

from .config import settings


_VERSION_RE = re.compile(r"^(\d+)")

engine = create_engine(settings.database_url, pool_pre_ping=True)


def _parse_pg_version(raw: str) -> str:
    match = _VERSION_RE.match(raw.strip())
    return match.group(1) if match else raw.strip()


def fetch_db_info() -> Dict[str, object]:
    with engine.connect() as conn:
        server_version_raw = conn.execute(text("SHOW server_version")).scalar()
        has_scan_runs = conn.execute(
            text("SELECT to_regclass('scan_runs') IS NOT NULL")
        ).scalar()

    return {
        "server_version_raw": server_version_raw,
        "server_version": _parse_pg_version(server_version_raw),
        "scan_runs_table": bool(has_scan_runs),
    }


def validate_versions() -> Tuple[bool, str]:
    info = fetch_db_info()
    server_version = info["server_version"]

    if server_version != settings.expected_pg_version:
        return False, (
            f"Postgres version mismatch: expected {settings.expected_pg_version}, "
            f"got {server_version}"
        )

    if not info["scan_runs_table"]:
        return False, "scan_runs table missing; run alembic upgrade head"

    return True, "ok"
