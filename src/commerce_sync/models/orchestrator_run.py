"""Orchestrator run ORM model for scheduled job observability."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, Integer, JSON, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from commerce_sync.models.base import Base


class OrchestratorRun(Base):
    """One execution of a scheduled orchestrator job."""

    __tablename__ = "orchestrator_runs"
    __table_args__ = (
        Index("ix_orchestrator_runs_job_id_started_at", "job_id", "started_at"),
        Index("ix_orchestrator_runs_status", "status"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    job_id: Mapped[str] = mapped_column(String(128), nullable=False)
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    items_processed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    error_message: Mapped[str | None] = mapped_column(String(2048))
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSON)


__all__ = ["OrchestratorRun"]
