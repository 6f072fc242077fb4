"""create orchestrator run history table

Revision ID: 0002_create_orchestrator_runs
Revises: 0001_create_sync_tables
Create Date: 2026-10-14 10:30:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

revision: str = "0002_create_orchestrator_runs"
down_revision: str | None = "0001_create_sync_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "orchestrator_runs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("job_id", sa.String(length=128), nullable=False),
        sa.Column("job_name", sa.String(length=255), nullable=False),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column(
            "items_processed",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error_message", sa.String(length=2048), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
    )
    op.create_index(
        "ix_orchestrator_runs_job_id_started_at",
        "orchestrator_runs",
        ["job_id", "started_at"],
    )
    op.create_index("ix_orchestrator_runs_status", "orchestrator_runs", ["status"])


def downgrade() -> None:
    op.drop_index("ix_orchestrator_runs_status", table_name="orchestrator_runs")
    op.drop_index(
        "ix_orchestrator_runs_job_id_started_at", table_name="orchestrator_runs"
    )
    op.drop_table("orchestrator_runs")
