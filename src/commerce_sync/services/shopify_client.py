"""Async Shopify Admin REST client used for validation and refund syncs."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta
from typing import Any, Final

import httpx

from commerce_sync.config import Settings, ShopSettings
from commerce_sync.models import SyncObjectType
from commerce_sync.services.retry_policy import (
    RetryPolicy,
    exponential_backoff,
)

DEFAULT_API_VERSION: Final[str] = "2024-10"
DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0
ORDERS_PAGE_SIZE: Final[int] = 250
TRANSIENT_HTTP_STATUS_CODES: Final[frozenset[int]] = frozenset(
    {408, 429, 500, 502, 503, 504}
)

_logger = logging.getLogger("commerce_sync.shopify")


class ShopConfigurationError(RuntimeError):
    """Raised when a shop has no usable upstream credentials."""


class ShopifyAPIError(Exception):
    """Base exception for upstream Shopify failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class ShopifyRateLimitError(ShopifyAPIError):
    """Raised when Shopify throttles the request (HTTP 429)."""


class ShopifyAuthenticationError(ShopifyAPIError):
    """Raised when Shopify rejects the access token (HTTP 401/403)."""


def is_retryable_shopify_error(error: BaseException) -> bool:
    if isinstance(error, ShopifyAuthenticationError):
        return False
    if isinstance(error, ShopifyAPIError):
        return error.status_code in TRANSIENT_HTTP_STATUS_CODES
    return isinstance(error, httpx.TransportError)


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _raise_for_response(response: httpx.Response, *, path: str) -> None:
    if response.is_success:
        return

    status_code = response.status_code
    message = f"Shopify request {path} failed: HTTP {status_code} {response.text[:200]}"
    if status_code == 429:
        raise ShopifyRateLimitError(
            message,
            status_code=status_code,
            retry_after_seconds=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status_code in {401, 403}:
        raise ShopifyAuthenticationError(message, status_code=status_code)
    raise ShopifyAPIError(message, status_code=status_code)


def _next_page_info(response: httpx.Response) -> str | None:
    next_url = response.links.get("next", {}).get("url")
    if not next_url:
        return None
    return httpx.URL(next_url).params.get("page_info")


def day_bounds(start_date: date, end_date: date) -> tuple[str, str]:
    """Return ISO timestamps covering whole days from start to end inclusive."""

    window_start = datetime.combine(start_date, time.min)
    window_end = datetime.combine(end_date + timedelta(days=1), time.min) - timedelta(
        seconds=1
    )
    return f"{window_start.isoformat()}Z", f"{window_end.isoformat()}Z"


class ShopifyAPIClient:
    """Per-shop REST client with retries for transient failures."""

    def __init__(
        self,
        *,
        shop: str,
        access_token: str,
        base_url: str | None = None,
        api_version: str = DEFAULT_API_VERSION,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._shop = shop
        self._access_token = access_token
        self._base_url = (base_url or f"https://{shop}").rstrip("/")
        self._api_version = api_version
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def shop(self) -> str:
        return self._shop

    async def count_orders(self, start_date: date, end_date: date) -> int:
        created_at_min, created_at_max = day_bounds(start_date, end_date)
        payload = await self._get_json(
            "orders/count.json",
            params={
                "created_at_min": created_at_min,
                "created_at_max": created_at_max,
                "status": "any",
            },
        )
        return int(payload.get("count", 0))

    async def count_refunds(self, start_date: date, end_date: date) -> int:
        """Count refunds created in the window across orders updated in it.

        Follows the ``Link: rel="next"`` cursor until every page is read.
        """

        updated_at_min, updated_at_max = day_bounds(start_date, end_date)
        params: dict[str, Any] = {
            "updated_at_min": updated_at_min,
            "updated_at_max": updated_at_max,
            "status": "any",
            "fields": "id,refunds",
            "limit": ORDERS_PAGE_SIZE,
        }
        window_start, window_end = start_date.isoformat(), end_date.isoformat()
        refund_count = 0
        pages = 0
        while True:
            payload, page_info = await self._get_page("orders.json", params=params)
            pages += 1
            for order in payload.get("orders", []):
                for refund in order.get("refunds") or []:
                    created_day = str(refund.get("created_at", ""))[:10]
                    if window_start <= created_day <= window_end:
                        refund_count += 1
            if page_info is None:
                break
            params = {
                "page_info": page_info,
                "fields": "id,refunds",
                "limit": ORDERS_PAGE_SIZE,
            }

        _logger.debug(
            "shopify_refunds_counted",
            extra={"shop": self._shop, "pages": pages, "refunds": refund_count},
        )
        return refund_count

    async def fetch_refunds(self, order_id: str) -> list[dict[str, Any]]:
        payload = await self._get_json(f"orders/{order_id}/refunds.json")
        return list(payload.get("refunds", []))

    async def count_records(
        self,
        object_type: SyncObjectType,
        start_date: date,
        end_date: date,
    ) -> int:
        if object_type is SyncObjectType.REFUNDS:
            return await self.count_refunds(start_date, end_date)
        return await self.count_orders(start_date, end_date)

    async def _get_json(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload, _ = await self._get_page(path, params=params)
        return payload

    async def _get_page(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> tuple[dict[str, Any], str | None]:
        """Return the JSON object and the ``page_info`` cursor of the next page."""

        async def request() -> tuple[dict[str, Any], str | None]:
            async with httpx.AsyncClient(
                base_url=f"{self._base_url}/admin/api/{self._api_version}/",
                headers={
                    "X-Shopify-Access-Token": self._access_token,
                    "Accept": "application/json",
                },
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(path, params=params)
            _raise_for_response(response, path=path)
            payload = response.json()
            if not isinstance(payload, dict):
                raise ShopifyAPIError(
                    f"Shopify request {path} returned a non-object payload",
                    status_code=response.status_code,
                )
            return payload, _next_page_info(response)

        return await self._retry_policy.run(
            request,
            is_retryable=is_retryable_shopify_error,
            operation_name=f"shopify:{self._shop}:{path}",
        )


class ShopifyClientFactory:
    """Build and cache one client per configured shop."""

    def __init__(
        self,
        *,
        shops: Mapping[str, ShopSettings],
        api_version: str = DEFAULT_API_VERSION,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._shops = dict(shops)
        self._api_version = api_version
        self._retry_policy = retry_policy
        self._transport = transport
        self._clients: dict[str, ShopifyAPIClient] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> ShopifyClientFactory:
        return cls(
            shops=settings.SHOPS,
            api_version=settings.SHOPIFY_API_VERSION,
            retry_policy=RetryPolicy(
                max_attempts=settings.UPSTREAM_MAX_ATTEMPTS,
                backoff=exponential_backoff(settings.UPSTREAM_BACKOFF_BASE_SECONDS),
            ),
        )

    def get_client(self, shop: str) -> ShopifyAPIClient:
        known_client = self._clients.get(shop)
        if known_client is not None:
            return known_client

        shop_settings = self._shops.get(shop)
        if shop_settings is None:
            raise ShopConfigurationError(f"Shop '{shop}' is not configured")
        if shop_settings.access_token is None:
            raise ShopConfigurationError(f"No access token configured for shop '{shop}'")

        token = shop_settings.access_token.get_secret_value()
        if not token:
            raise ShopConfigurationError(f"No access token configured for shop '{shop}'")

        client = ShopifyAPIClient(
            shop=shop,
            access_token=token,
            base_url=shop_settings.base_url(shop),
            api_version=self._api_version,
            retry_policy=self._retry_policy,
            transport=self._transport,
        )
        self._clients[shop] = client
        return client


__all__ = [
    "DEFAULT_API_VERSION",
    "ShopConfigurationError",
    "ShopifyAPIClient",
    "ShopifyAPIError",
    "ShopifyAuthenticationError",
    "ShopifyClientFactory",
    "ShopifyRateLimitError",
    "TRANSIENT_HTTP_STATUS_CODES",
    "day_bounds",
    "is_retryable_shopify_error",
]
