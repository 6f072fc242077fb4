"""Find (shop, day, object type) windows that have no sync job yet."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta

from commerce_sync.models import SyncObjectType
from commerce_sync.services.job_store import SyncJobKey, SyncJobStore

DEFAULT_PAGE_SIZE = 1000

_gap_logger = logging.getLogger("commerce_sync.gap_detector")


@dataclass(slots=True, frozen=True)
class GapDetectionResult:
    """Expected, existing and missing job keys for a date range."""

    expected: int
    existing: int
    missing: tuple[SyncJobKey, ...]


def iter_dates(start_date: date, end_date: date) -> list[date]:
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date")
    return [
        start_date + timedelta(days=offset)
        for offset in range((end_date - start_date).days + 1)
    ]


class GapDetector:
    """Compare the expected key grid against stored jobs."""

    def __init__(
        self,
        *,
        store: SyncJobStore,
        shops: Sequence[str],
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be greater than zero")

        self._store = store
        self._shops = tuple(sorted(set(shops)))
        self._page_size = page_size

    @property
    def shops(self) -> tuple[str, ...]:
        return self._shops

    def expected_keys(
        self,
        start_date: date,
        end_date: date,
        object_type: SyncObjectType | None = None,
    ) -> list[SyncJobKey]:
        object_types = [object_type] if object_type is not None else list(SyncObjectType)
        keys = [
            SyncJobKey(start_date=day, shop=shop, object_type=current_type)
            for day in iter_dates(start_date, end_date)
            for shop in self._shops
            for current_type in object_types
        ]
        return sorted(keys, key=SyncJobKey.sort_key)

    async def existing_keys(
        self,
        start_date: date,
        end_date: date,
        object_type: SyncObjectType | None = None,
    ) -> set[SyncJobKey]:
        """Read every stored key in range, page by page until a short page."""

        existing: set[SyncJobKey] = set()
        offset = 0
        pages = 0
        while True:
            page = await self._store.list_keys_page(
                start_date,
                end_date,
                object_type=object_type,
                limit=self._page_size,
                offset=offset,
            )
            pages += 1
            existing.update(page)
            if len(page) < self._page_size:
                break
            offset += self._page_size

        _gap_logger.debug(
            "existing_job_keys_loaded",
            extra={"pages": pages, "existing": len(existing)},
        )
        return existing

    async def detect(
        self,
        start_date: date,
        end_date: date,
        object_type: SyncObjectType | None = None,
    ) -> GapDetectionResult:
        expected = self.expected_keys(start_date, end_date, object_type)
        existing = await self.existing_keys(start_date, end_date, object_type)
        missing = tuple(key for key in expected if key not in existing)
        existing_expected = len(expected) - len(missing)

        _gap_logger.info(
            "job_gaps_detected",
            extra={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "object_type": object_type.value if object_type else None,
                "expected": len(expected),
                "existing": existing_expected,
                "missing": len(missing),
            },
        )
        return GapDetectionResult(
            expected=len(expected),
            existing=existing_expected,
            missing=missing,
        )


__all__ = ["DEFAULT_PAGE_SIZE", "GapDetectionResult", "GapDetector", "iter_dates"]
