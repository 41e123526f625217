"""Shopify merch order fetcher."""

import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from studio_pipeline.domain.models import FetchWindow, RawReport, ReportCategory
from studio_pipeline.logging import get_logger

from .base import BaseFetcher
from .exceptions import FetcherConfigurationError, FetchResponseError

logger = get_logger(__name__, component="fetcher")

CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"


class ShopifyOrderFetcher(BaseFetcher):
    """Fetcher for merch orders via the Shopify Admin REST API.

    API Details:
        Endpoint: https://{store}/admin/api/{version}/orders.json
        Authentication: X-Shopify-Access-Token header
        Pagination: cursor links in the ``Link`` response header
        Rate limit: ``X-Shopify-Shop-Api-Call-Limit`` ("used/bucket"); the
        fetcher pauses between pages once usage passes the threshold
    """

    name = "shopify"
    categories = frozenset({ReportCategory.SHOPIFY_ORDERS})

    def __init__(
        self,
        store_domain: Optional[str],
        access_token: Optional[str],
        api_version: str = "2024-01",
        page_size: int = 250,
        throttle_threshold: float = 0.8,
        throttle_delay_seconds: float = 1.0,
        timeout: int = 60,
        user_agent: str = "StudioPipeline/1.0",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(timeout=timeout, user_agent=user_agent)
        if not store_domain or not access_token:
            raise FetcherConfigurationError(
                "SHOPIFY_STORE_DOMAIN and SHOPIFY_ACCESS_TOKEN must both be set"
            )

        domain = store_domain.strip().removeprefix("https://").removeprefix("http://").rstrip("/")
        self.orders_url = f"https://{domain}/admin/api/{api_version}/orders.json"
        self.page_size = page_size
        self.throttle_threshold = throttle_threshold
        self.throttle_delay_seconds = throttle_delay_seconds
        self._sleep = sleep
        self._session.headers.update({"X-Shopify-Access-Token": access_token})

    def fetch(self, category: ReportCategory, window: FetchWindow) -> RawReport:
        url: Optional[str] = self.orders_url
        params: Optional[Dict[str, Any]] = {
            "status": "any",
            "limit": self.page_size,
            "created_at_min": f"{window.since.isoformat()}T00:00:00Z",
            "created_at_max": f"{window.until.isoformat()}T23:59:59Z",
        }
        rows: List[Dict[str, Any]] = []
        pages = 0

        while url:
            response = self._request(url, params=params)
            payload = self._json(response)
            orders = payload.get("orders") if isinstance(payload, dict) else None
            if not isinstance(orders, list):
                raise FetchResponseError("Expected 'orders' array in Shopify response")

            rows.extend(_flatten(order) for order in orders)
            pages += 1

            # The next link already carries page_info and limit
            url = response.links.get("next", {}).get("url")
            params = None
            if url:
                self._throttle(response)

        logger.info(
            f"Fetched {len(rows)} Shopify orders in {pages} page(s)",
            extra={
                "event": "fetcher.shopify.completed",
                "category": category.value,
                "orders": len(rows),
                "pages": pages,
            },
        )
        return RawReport(content=rows, metadata={"pages": pages})

    def _throttle(self, response: requests.Response) -> None:
        usage = _call_limit_usage(response.headers.get(CALL_LIMIT_HEADER))
        if usage is not None and usage >= self.throttle_threshold:
            logger.debug(
                f"Shopify call limit at {usage:.0%}; pausing",
                extra={"event": "fetcher.shopify.throttled", "usage": usage},
            )
            self._sleep(self.throttle_delay_seconds)


def _call_limit_usage(header: Optional[str]) -> Optional[float]:
    """Parse "used/bucket" into a ratio."""
    if not header or "/" not in header:
        return None
    used, _, bucket = header.partition("/")
    try:
        return int(used) / int(bucket)
    except (ValueError, ZeroDivisionError):
        return None


def _flatten(order: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": order.get("id"),
        "name": order.get("name"),
        "email": order.get("email"),
        "created": order.get("created_at"),
        "financialStatus": order.get("financial_status"),
        "fulfillmentStatus": order.get("fulfillment_status"),
        "totalPrice": order.get("total_price"),
        "currency": order.get("currency"),
        "lineItemCount": len(order.get("line_items") or []),
    }
