"""Tests for the sync job listing API."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.sqlite")
os.environ.setdefault("SECRET_KEY", "test-secret")

from commerce_sync.api.jobs import router
from commerce_sync.api.orchestrator import _get_admin_token
from commerce_sync.database import get_db_session
from commerce_sync.models import Base, SyncJobStatus, SyncObjectType
from commerce_sync.services.job_store import SyncJobKey, SyncJobStore

SessionScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

AUTH_HEADERS = {"Authorization": "Bearer jobs-token"}


async def _build_session_scope(tmp_path: Path) -> SessionScopeFactory:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'jobs-api.sqlite'}"
    engine = create_async_engine(database_url)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )

    @asynccontextmanager
    async def scoped_session() -> AsyncIterator[AsyncSession]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    return scoped_session


async def _seeded_app(tmp_path: Path) -> FastAPI:
    scoped_session = await _build_session_scope(tmp_path)
    store = SyncJobStore(session_factory=scoped_session)
    await store.insert_if_absent(
        [
            SyncJobKey(start_date=day, shop=shop, object_type=object_type)
            for day in (date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3))
            for shop in ("alpha.myshopify.com", "beta.myshopify.com")
            for object_type in (SyncObjectType.ORDERS, SyncObjectType.REFUNDS)
        ]
    )
    (failed_job,) = await store.list_by_status(
        SyncJobStatus.PENDING,
        shop="beta.myshopify.com",
        object_type=SyncObjectType.REFUNDS,
        start_date=date(2025, 1, 2),
        end_date=date(2025, 1, 2),
    )
    assert await store.claim(failed_job.id)
    await store.update_status(
        failed_job.id,
        SyncJobStatus.FAILED,
        expected_statuses=(SyncJobStatus.RUNNING,),
        error_message="Timeout detected by watchdog - refund job exceeded 5 minute limit",
    )

    async def override_get_db_session() -> AsyncIterator[AsyncSession]:
        async with scoped_session() as session:
            yield session

    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[_get_admin_token] = lambda: "jobs-token"
    return app


@pytest.mark.asyncio
async def test_jobs_listing_filters_and_paginates(tmp_path: Path) -> None:
    app = await _seeded_app(tmp_path)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        first_page = await client.get(
            "/api/jobs", headers=AUTH_HEADERS, params={"pageSize": 5}
        )
        last_page = await client.get(
            "/api/jobs", headers=AUTH_HEADERS, params={"pageSize": 5, "page": 9}
        )
        failed = await client.get(
            "/api/jobs", headers=AUTH_HEADERS, params={"status": "failed"}
        )
        windowed = await client.get(
            "/api/jobs",
            headers=AUTH_HEADERS,
            params={
                "objectType": "orders",
                "shop": "alpha.myshopify.com",
                "dateFrom": "2025-01-02",
                "dateTo": "2025-01-03",
            },
        )

    assert first_page.status_code == 200
    body = first_page.json()
    assert body["totalItems"] == 12
    assert body["totalPages"] == 3
    assert body["pageSize"] == 5
    assert len(body["items"]) == 5
    assert body["items"][0]["startDate"] == "2025-01-03"

    assert last_page.json()["page"] == 3
    assert len(last_page.json()["items"]) == 2

    (failed_item,) = failed.json()["items"]
    assert failed_item["shop"] == "beta.myshopify.com"
    assert failed_item["objectType"] == "refunds"
    assert failed_item["attempts"] == 1
    assert failed_item["errorMessage"].startswith("Timeout detected by watchdog")

    assert [item["startDate"] for item in windowed.json()["items"]] == [
        "2025-01-03",
        "2025-01-02",
    ]


@pytest.mark.asyncio
async def test_jobs_listing_requires_admin_token(tmp_path: Path) -> None:
    app = await _seeded_app(tmp_path)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/jobs")
        invalid_status = await client.get(
            "/api/jobs", headers=AUTH_HEADERS, params={"status": "unknown"}
        )

    assert response.status_code == 401
    assert invalid_status.status_code == 422
