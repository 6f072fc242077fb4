"""create sync job and order index tables

Revision ID: 0001_create_sync_tables
Revises:
Create Date: 2026-10-12 09:00:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

revision: str = "0001_create_sync_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_OBJECT_TYPES = ("orders", "skus", "refunds", "shipping-discounts", "fulfillments")
_JOB_STATUSES = ("pending", "running", "completed", "failed", "dead_letter")


def upgrade() -> None:
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column(
            "object_type",
            sa.Enum(*_OBJECT_TYPES, name="sync_object_type"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*_JOB_STATUSES, name="sync_job_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "records_processed",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error_message", sa.String(length=2048), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "shop",
            "start_date",
            "object_type",
            name="uq_sync_jobs_shop_start_date_object_type",
        ),
        sa.CheckConstraint("end_date >= start_date", name="ck_sync_jobs_window_order"),
        sa.CheckConstraint("attempts >= 0", name="ck_sync_jobs_attempts_non_negative"),
    )
    op.create_index(
        "ix_sync_jobs_status_start_date_shop",
        "sync_jobs",
        ["status", "start_date", "shop"],
    )
    op.create_index(
        "ix_sync_jobs_object_type_status", "sync_jobs", ["object_type", "status"]
    )
    op.create_index("ix_sync_jobs_started_at", "sync_jobs", ["started_at"])

    op.create_table(
        "shop_orders",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("shop", sa.String(length=255), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "refund_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("last_refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunds_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("shop", "order_id", name="uq_shop_orders_shop_order_id"),
    )
    op.create_index(
        "ix_shop_orders_shop_created_at", "shop_orders", ["shop", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_shop_orders_shop_created_at", table_name="shop_orders")
    op.drop_table("shop_orders")
    op.drop_index("ix_sync_jobs_started_at", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_object_type_status", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_status_start_date_shop", table_name="sync_jobs")
    op.drop_table("sync_jobs")
