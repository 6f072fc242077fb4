"""Pick a direct or chunked execution path for refund syncs by order volume."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from math import ceil
from typing import Any, Protocol

import httpx
from sqlalchemy import func, select

from commerce_sync.models import ShopOrder
from commerce_sync.services.job_store import SessionScopeFactory
from commerce_sync.services.shopify_client import ShopifyAPIError, ShopifyClientFactory

DEFAULT_CHUNK_THRESHOLD = 300
DEFAULT_CHUNK_SIZE = 100
DEFAULT_CHUNK_DELAY_SECONDS = 1.0

SleepFunction = Callable[[float], Awaitable[None]]

_strategist_logger = logging.getLogger("commerce_sync.chunk_strategist")


class SyncStrategy(str, Enum):
    """Execution path for one refund sync window."""

    DIRECT = "direct"
    CHUNKED = "chunked"


def choose_strategy(
    order_count: int,
    *,
    threshold: int = DEFAULT_CHUNK_THRESHOLD,
) -> SyncStrategy:
    """Return ``CHUNKED`` once the order count reaches the threshold."""

    if order_count >= threshold:
        return SyncStrategy.CHUNKED
    return SyncStrategy.DIRECT


class OrderIndex(Protocol):
    async def count_orders(self, shop: str, start_date: date, end_date: date) -> int: ...

    async def list_order_ids(
        self, shop: str, start_date: date, end_date: date
    ) -> list[str]: ...


class RefundOrderProcessor(Protocol):
    async def process_order(self, shop: str, order_id: str) -> bool: ...


@dataclass(slots=True, frozen=True)
class RefundSyncPlan:
    """Strategy decision for one (shop, window)."""

    shop: str
    start_date: date
    end_date: date
    order_count: int
    strategy: SyncStrategy
    chunk_count: int


@dataclass(slots=True, frozen=True)
class RefundSyncSummary:
    """Counters aggregated across every order and chunk."""

    plan: RefundSyncPlan
    processed: int
    with_refunds: int
    errors: int
    chunks_processed: int


def _window_bounds(start_date: date, end_date: date) -> tuple[datetime, datetime]:
    return (
        datetime.combine(start_date, time.min, tzinfo=UTC),
        datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=UTC),
    )


class SqlOrderIndex:
    """Order index backed by the ``shop_orders`` table."""

    def __init__(self, *, session_factory: SessionScopeFactory | None = None) -> None:
        if session_factory is None:
            from commerce_sync.database import session_scope

            session_factory = session_scope
        self._session_factory = session_factory

    async def count_orders(self, shop: str, start_date: date, end_date: date) -> int:
        window_start, window_end = _window_bounds(start_date, end_date)
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(ShopOrder.id)).where(
                    ShopOrder.shop == shop,
                    ShopOrder.created_at >= window_start,
                    ShopOrder.created_at < window_end,
                )
            )
        return int(count or 0)

    async def list_order_ids(
        self, shop: str, start_date: date, end_date: date
    ) -> list[str]:
        window_start, window_end = _window_bounds(start_date, end_date)
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(ShopOrder.order_id)
                .where(
                    ShopOrder.shop == shop,
                    ShopOrder.created_at >= window_start,
                    ShopOrder.created_at < window_end,
                )
                .order_by(ShopOrder.created_at.asc(), ShopOrder.order_id.asc())
            )
            return list(rows)


class ShopifyRefundProcessor:
    """Fetch refunds for one order and record them on the order index."""

    def __init__(
        self,
        *,
        client_factory: ShopifyClientFactory,
        session_factory: SessionScopeFactory | None = None,
        now_factory: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from commerce_sync.database import session_scope

            session_factory = session_scope
        self._client_factory = client_factory
        self._session_factory = session_factory
        self._now_factory = now_factory or (lambda: datetime.now(UTC))

    async def process_order(self, shop: str, order_id: str) -> bool:
        refunds = await self._client_factory.get_client(shop).fetch_refunds(order_id)
        last_refunded_at = self._latest_refund_time(refunds)
        async with self._session_factory() as session:
            order = await session.scalar(
                select(ShopOrder).where(
                    ShopOrder.shop == shop, ShopOrder.order_id == order_id
                )
            )
            if order is not None:
                order.refund_count = len(refunds)
                order.last_refunded_at = last_refunded_at
                order.refunds_synced_at = self._now_factory()
        return bool(refunds)

    @staticmethod
    def _latest_refund_time(refunds: list[dict[str, Any]]) -> datetime | None:
        timestamps: list[datetime] = []
        for refund in refunds:
            raw_value = refund.get("created_at")
            if not raw_value:
                continue
            try:
                timestamps.append(datetime.fromisoformat(str(raw_value)))
            except ValueError:
                continue
        return max(timestamps) if timestamps else None


class ChunkStrategist:
    """Size refund work and run it directly or in delayed chunks."""

    def __init__(
        self,
        *,
        order_index: OrderIndex,
        processor: RefundOrderProcessor,
        threshold: int = DEFAULT_CHUNK_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_delay_seconds: float = DEFAULT_CHUNK_DELAY_SECONDS,
        sleep: SleepFunction = asyncio.sleep,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be greater than zero")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be greater than zero")
        if chunk_delay_seconds < 0:
            raise ValueError("chunk_delay_seconds must be zero or greater")

        self._order_index = order_index
        self._processor = processor
        self._threshold = threshold
        self._chunk_size = chunk_size
        self._chunk_delay_seconds = chunk_delay_seconds
        self._sleep = sleep

    async def plan(self, shop: str, start_date: date, end_date: date) -> RefundSyncPlan:
        if start_date > end_date:
            raise ValueError("start_date must be on or before end_date")

        order_count = await self._order_index.count_orders(shop, start_date, end_date)
        strategy = choose_strategy(order_count, threshold=self._threshold)
        chunk_count = 1
        if strategy is SyncStrategy.CHUNKED:
            chunk_count = ceil(order_count / self._chunk_size)
        return RefundSyncPlan(
            shop=shop,
            start_date=start_date,
            end_date=end_date,
            order_count=order_count,
            strategy=strategy,
            chunk_count=chunk_count,
        )

    async def run(self, shop: str, start_date: date, end_date: date) -> RefundSyncSummary:
        plan = await self.plan(shop, start_date, end_date)
        order_ids = await self._order_index.list_order_ids(shop, start_date, end_date)
        if plan.strategy is SyncStrategy.CHUNKED:
            chunks = [
                order_ids[index : index + self._chunk_size]
                for index in range(0, len(order_ids), self._chunk_size)
            ]
        else:
            chunks = [order_ids]

        _strategist_logger.info(
            "refund_sync_started",
            extra={
                "shop": shop,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "strategy": plan.strategy.value,
                "order_count": plan.order_count,
                "chunks": len(chunks),
            },
        )

        processed = 0
        with_refunds = 0
        errors = 0
        chunks_processed = 0
        for chunk_index, chunk in enumerate(chunks):
            if chunk_index > 0 and self._chunk_delay_seconds > 0:
                await self._sleep(self._chunk_delay_seconds)

            for order_id in chunk:
                try:
                    had_refunds = await self._processor.process_order(shop, order_id)
                except (ShopifyAPIError, httpx.HTTPError) as error:
                    errors += 1
                    _strategist_logger.warning(
                        "refund_order_failed",
                        extra={"shop": shop, "order_id": order_id, "error": str(error)},
                    )
                    continue
                processed += 1
                if had_refunds:
                    with_refunds += 1
            chunks_processed += 1

        summary = RefundSyncSummary(
            plan=plan,
            processed=processed,
            with_refunds=with_refunds,
            errors=errors,
            chunks_processed=chunks_processed,
        )
        _strategist_logger.info(
            "refund_sync_completed",
            extra={
                "shop": shop,
                "strategy": plan.strategy.value,
                "processed": processed,
                "with_refunds": with_refunds,
                "errors": errors,
                "chunks_processed": chunks_processed,
            },
        )
        return summary


__all__ = [
    "ChunkStrategist",
    "DEFAULT_CHUNK_DELAY_SECONDS",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_CHUNK_THRESHOLD",
    "OrderIndex",
    "RefundOrderProcessor",
    "RefundSyncPlan",
    "RefundSyncSummary",
    "ShopifyRefundProcessor",
    "SqlOrderIndex",
    "SyncStrategy",
    "choose_strategy",
]
