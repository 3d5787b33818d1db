"""create scan_runs table

Revision ID: 0001_create_scan_runs
Revises:
Create Date: 2026-10-19

"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_create_scan_runs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS scan_runs (
          scan_run_id     UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          site_id         TEXT NOT NULL,
          trigger         TEXT NOT NULL,
          status          TEXT NOT NULL,
          inspected       INT NOT NULL DEFAULT 0,
          remaining       INT,
          passes          INT NOT NULL DEFAULT 0,
          error           TEXT,
          stop_requested  BOOLEAN NOT NULL DEFAULT FALSE,
          created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
          started_at      TIMESTAMPTZ,
          completed_at    TIMESTAMPTZ,
          CHECK (status IN ('queued', 'running', 'done', 'stopped', 'failed')),
          CHECK (trigger IN ('api', 'cli', 'schedule')),
          CHECK (inspected >= 0 AND passes >= 0)
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS scan_runs_site_created_idx "
        "ON scan_runs (site_id, created_at DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS scan_runs_status_idx "
        "ON scan_runs (status, created_at DESC);"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS scan_runs_status_idx;")
    op.execute("DROP INDEX IF EXISTS scan_runs_site_created_idx;")
    op.execute("DROP TABLE IF EXISTS scan_runs;")
