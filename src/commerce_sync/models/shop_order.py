"""Minimal order index used to size refund sync work."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
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


class ShopOrder(Base):
    """Order identifiers per shop with refund bookkeeping."""

    __tablename__ = "shop_orders"
    __table_args__ = (
        UniqueConstraint("shop", "order_id", name="uq_shop_orders_shop_order_id"),
        Index("ix_shop_orders_shop_created_at", "shop", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refund_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    last_refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunds_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


__all__ = ["ShopOrder"]
