"""Sync job listing API routes."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce_sync.api.orchestrator import require_admin
from commerce_sync.database import get_db_session
from commerce_sync.models import SyncJob, SyncJobStatus, SyncObjectType
from commerce_sync.schemas import SyncJobListResponse, SyncJobRead

router = APIRouter(
    prefix="/api/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_admin)],
)


@router.get(
    "",
    response_model=SyncJobListResponse,
    status_code=status.HTTP_200_OK,
)
async def list_sync_jobs(
    page: int = 1,
    page_size: int = Query(default=50, alias="pageSize"),
    status_filter: SyncJobStatus | None = Query(default=None, alias="status"),
    object_type: SyncObjectType | None = Query(default=None, alias="objectType"),
    shop: str | None = None,
    date_from: date | None = Query(default=None, alias="dateFrom"),
    date_to: date | None = Query(default=None, alias="dateTo"),
    session: AsyncSession = Depends(get_db_session),
) -> SyncJobListResponse:
    safe_page = max(page, 1)
    safe_page_size = min(max(page_size, 1), 200)

    statement = select(SyncJob)
    if status_filter is not None:
        statement = statement.where(SyncJob.status == status_filter)
    if object_type is not None:
        statement = statement.where(SyncJob.object_type == object_type)
    if shop:
        statement = statement.where(SyncJob.shop == shop.strip())
    if date_from is not None:
        statement = statement.where(SyncJob.start_date >= date_from)
    if date_to is not None:
        statement = statement.where(SyncJob.start_date <= date_to)

    total_items = int(
        (await session.scalar(select(func.count()).select_from(statement.subquery())))
        or 0
    )
    total_pages = max(1, ((total_items - 1) // safe_page_size) + 1)
    bounded_page = min(safe_page, total_pages)

    rows = (
        (
            await session.execute(
                statement.order_by(
                    SyncJob.start_date.desc(), SyncJob.shop.asc(), SyncJob.id.asc()
                )
                .offset((bounded_page - 1) * safe_page_size)
                .limit(safe_page_size)
            )
        )
        .scalars()
        .all()
    )

    return SyncJobListResponse(
        page=bounded_page,
        page_size=safe_page_size,
        total_items=total_items,
        total_pages=total_pages,
        items=[SyncJobRead.model_validate(row) for row in rows],
    )


__all__ = ["router"]
