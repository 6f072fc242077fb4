"""Sync job ORM model and the object type lookup tables."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SqlEnum,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from commerce_sync.models.base import Base

ERROR_MESSAGE_MAX_LENGTH = 2048


class SyncObjectType(str, Enum):
    """Category of upstream records a sync job covers."""

    ORDERS = "orders"
    SKUS = "skus"
    REFUNDS = "refunds"
    SHIPPING_DISCOUNTS = "shipping-discounts"
    FULFILLMENTS = "fulfillments"

    @property
    def max_parallel_shops(self) -> int:
        return MAX_PARALLEL_SHOPS[self]

    @property
    def dispatch_rank(self) -> int:
        return DISPATCH_RANK[self]

    @property
    def dependencies(self) -> frozenset[SyncObjectType]:
        return SYNC_DEPENDENCIES[self]


MAX_PARALLEL_SHOPS: dict[SyncObjectType, int] = {
    SyncObjectType.ORDERS: 3,
    SyncObjectType.SKUS: 1,
    SyncObjectType.REFUNDS: 3,
    SyncObjectType.SHIPPING_DISCOUNTS: 3,
    SyncObjectType.FULFILLMENTS: 3,
}

DISPATCH_RANK: dict[SyncObjectType, int] = {
    SyncObjectType.ORDERS: 1,
    SyncObjectType.SKUS: 2,
    SyncObjectType.REFUNDS: 3,
    SyncObjectType.SHIPPING_DISCOUNTS: 3,
    SyncObjectType.FULFILLMENTS: 4,
}

SYNC_DEPENDENCIES: dict[SyncObjectType, frozenset[SyncObjectType]] = {
    SyncObjectType.ORDERS: frozenset(),
    SyncObjectType.SKUS: frozenset({SyncObjectType.ORDERS}),
    SyncObjectType.REFUNDS: frozenset({SyncObjectType.ORDERS, SyncObjectType.SKUS}),
    SyncObjectType.SHIPPING_DISCOUNTS: frozenset({SyncObjectType.ORDERS}),
    SyncObjectType.FULFILLMENTS: frozenset({SyncObjectType.ORDERS}),
}


class SyncJobStatus(str, Enum):
    """Lifecycle state of a sync job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


def _enum_values(enum_class: type[Enum]) -> list[str]:
    return [member.value for member in enum_class]


class SyncJob(Base):
    """One unit of sync work for a (shop, day, object type) window."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        UniqueConstraint(
            "shop",
            "start_date",
            "object_type",
            name="uq_sync_jobs_shop_start_date_object_type",
        ),
        CheckConstraint("end_date >= start_date", name="ck_sync_jobs_window_order"),
        CheckConstraint("attempts >= 0", name="ck_sync_jobs_attempts_non_negative"),
        Index("ix_sync_jobs_status_start_date_shop", "status", "start_date", "shop"),
        Index("ix_sync_jobs_object_type_status", "object_type", "status"),
        Index("ix_sync_jobs_started_at", "started_at"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    object_type: Mapped[SyncObjectType] = mapped_column(
        SqlEnum(
            SyncObjectType,
            name="sync_object_type",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[SyncJobStatus] = mapped_column(
        SqlEnum(
            SyncJobStatus,
            name="sync_job_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=SyncJobStatus.PENDING,
        server_default=SyncJobStatus.PENDING.value,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    records_processed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    error_message: Mapped[str | None] = mapped_column(
        String(ERROR_MESSAGE_MAX_LENGTH)
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


__all__ = [
    "DISPATCH_RANK",
    "ERROR_MESSAGE_MAX_LENGTH",
    "MAX_PARALLEL_SHOPS",
    "SYNC_DEPENDENCIES",
    "SyncJob",
    "SyncJobStatus",
    "SyncObjectType",
]
