"""Tests for failed job validation against upstream record counts."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from commerce_sync.models import Base, SyncJobStatus, SyncObjectType
from commerce_sync.services.failure_validator import (
    EMPTY_WINDOW_MESSAGE,
    FailedJobValidator,
)
from commerce_sync.services.job_store import SyncJobKey, SyncJobStore
from commerce_sync.services.shopify_client import (
    ShopConfigurationError,
    ShopifyAPIError,
)

SessionScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


async def _build_session_scope(tmp_path: Path) -> SessionScopeFactory:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'failure-validator.sqlite'}"
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


class _FakeCounter:
    def __init__(self, count: int | Exception) -> None:
        self._count = count

    async def count_records(
        self,
        object_type: SyncObjectType,
        start_date: date,
        end_date: date,
    ) -> int:
        if isinstance(self._count, Exception):
            raise self._count
        return self._count


class _FakeCounterFactory:
    def __init__(self, counts: dict[str, int | Exception]) -> None:
        self._counts = counts

    def get_client(self, shop: str) -> _FakeCounter:
        if shop not in self._counts:
            raise ShopConfigurationError(f"Shop '{shop}' is not configured")
        return _FakeCounter(self._counts[shop])


async def _failed_jobs(store: SyncJobStore, shops: list[str]) -> None:
    await store.insert_if_absent(
        [
            SyncJobKey(
                start_date=date(2025, 1, 1), shop=shop, object_type=SyncObjectType.ORDERS
            )
            for shop in shops
        ]
    )
    for job in await store.list_by_status(SyncJobStatus.PENDING):
        assert await store.claim(job.id)
        await store.update_status(
            job.id,
            SyncJobStatus.FAILED,
            expected_statuses=(SyncJobStatus.RUNNING,),
            error_message="Sync worker failed (500)",
        )


@pytest.mark.asyncio
async def test_empty_windows_are_reclassified_and_real_failures_kept(
    tmp_path: Path,
) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    shops = [
        "empty.myshopify.com",
        "busy.myshopify.com",
        "broken.myshopify.com",
    ]
    await _failed_jobs(store, shops)
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    validator = FailedJobValidator(
        store=store,
        client_factory=_FakeCounterFactory(
            {
                "empty.myshopify.com": 0,
                "busy.myshopify.com": 17,
                "broken.myshopify.com": ShopifyAPIError("HTTP 500", status_code=500),
            }
        ),
        request_delay_seconds=0.5,
        sleep=fake_sleep,
    )

    summary = await validator.validate()

    assert summary.total == 3
    assert summary.empty_windows == 1
    assert summary.real_failures == 1
    assert summary.lookup_errors == 1
    assert summary.updated == 1
    assert delays == [0.5, 0.5]

    by_shop = {item.shop: item for item in summary.jobs}
    assert by_shop["empty.myshopify.com"].reclassified is True
    assert by_shop["busy.myshopify.com"].upstream_count == 17
    assert by_shop["broken.myshopify.com"].upstream_count == -1
    assert by_shop["broken.myshopify.com"].error == "HTTP 500"

    (completed,) = await store.list_by_status(SyncJobStatus.COMPLETED)
    assert completed.shop == "empty.myshopify.com"
    assert completed.error_message == EMPTY_WINDOW_MESSAGE
    assert completed.records_processed == 0
    assert (await store.count_by_status()).failed == 2


@pytest.mark.asyncio
async def test_unconfigured_shop_aborts_validation(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    await _failed_jobs(store, ["missing.myshopify.com"])
    validator = FailedJobValidator(
        store=store, client_factory=_FakeCounterFactory({}), request_delay_seconds=0
    )

    with pytest.raises(ShopConfigurationError, match="not configured"):
        await validator.validate()

    assert (await store.count_by_status()).failed == 1


@pytest.mark.asyncio
async def test_validation_with_no_failed_jobs_is_a_no_op(tmp_path: Path) -> None:
    store = SyncJobStore(session_factory=await _build_session_scope(tmp_path))
    validator = FailedJobValidator(
        store=store, client_factory=_FakeCounterFactory({})
    )

    summary = await validator.validate(object_type=SyncObjectType.REFUNDS)

    assert summary.total == 0
    assert summary.jobs == ()


def test_validator_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        FailedJobValidator(
            store=object(),  # type: ignore[arg-type]
            client_factory=_FakeCounterFactory({}),
            limit=0,
        )
