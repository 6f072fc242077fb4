"""Tests for the main FastAPI application."""

from __future__ import annotations

import os

import pytest
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.sqlite")
os.environ.setdefault("SECRET_KEY", "test-secret")

from commerce_sync.main import create_app


@pytest.mark.asyncio
async def test_health_check() -> None:
    app = create_app()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_routers_are_mounted() -> None:
    app = create_app()
    paths = {getattr(route, "path", "") for route in app.routes}

    assert "/api/orchestrator/continue" in paths
    assert "/api/orchestrator/gap-fill" in paths
    assert "/api/orchestrator/smart-sync" in paths
    assert "/api/jobs" in paths
    assert "/api/scheduler/runs" in paths

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        unauthenticated = await client.post("/api/orchestrator/continue")
        scheduler = await client.get("/api/scheduler")

    assert unauthenticated.status_code == 401
    assert scheduler.status_code == 503
