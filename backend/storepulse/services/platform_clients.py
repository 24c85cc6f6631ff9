"""REST clients for historical backfills.

WHAT:
    Minimal async clients for the endpoints a backfill needs:
    - Shopify Admin REST: orders, customers (Link header pagination)
    - Stripe API: charges, customers (starting_after pagination)
    - GA4 Data API: daily sessions via runReport (offset/limit pagination)

WHY:
    Webhooks only deliver events from the moment an integration is
    connected. The backfill pulls the last N days so the dashboard has a
    comparison period on day one.

HOW:
    - One httpx.AsyncClient per sync (`async with ShopifyRestClient(...)`)
    - 429 -> wait Retry-After and retry; transport errors -> linear backoff
    - Non-2xx after retries -> PlatformApiError (401/403 tell the user to reconnect)
    - `transport` is injectable so tests use httpx.MockTransport

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/latest/resources/order
    - https://shopify.dev/docs/api/usage/pagination-rest
    - https://docs.stripe.com/api/charges/list
    - https://docs.stripe.com/api/pagination
    - https://developers.google.com/analytics/devguides/reporting/data/v1/rest/v1beta/properties/runReport
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from storepulse.exceptions import PlatformApiError

logger = logging.getLogger(__name__)

SHOPIFY_API_VERSION = "2024-07"
STRIPE_API_BASE = "https://api.stripe.com/v1"
GA4_DATA_API_BASE = "https://analyticsdata.googleapis.com/v1beta"

PAGE_SIZE = 100
GA4_PAGE_SIZE = 10000
MAX_RETRIES = 3


class _PlatformClient:
    """Shared request/retry loop."""

    platform = "platform"

    def __init__(
        self,
        base_url: str,
        headers: Dict[str, str],
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        return await self._request("GET", url, params=params)

    async def _post(self, url: str, json: Dict[str, Any]) -> httpx.Response:
        return await self._request("POST", url, json=json)

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        tag = f"[{self.platform.upper()}_CLIENT]"
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await self._client.request(method, url, params=params, json=json)
            except httpx.RequestError as exc:
                last_error = exc
                logger.warning(f"{tag} Request error: {exc} (attempt {attempt + 1}/{MAX_RETRIES})")
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(1 * (attempt + 1))
                continue

            if response.status_code == 429:
                retry_after = float(response.headers.get("Retry-After", 2))
                logger.warning(f"{tag} Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{MAX_RETRIES})")
                last_error = PlatformApiError(self.platform, "rate limited", status_code=429)
                await asyncio.sleep(retry_after)
                continue

            if response.status_code >= 400:
                raise PlatformApiError(
                    self.platform,
                    f"{method} {url} returned {response.status_code}",
                    status_code=response.status_code,
                )

            return response

        raise PlatformApiError(self.platform, f"Failed after {MAX_RETRIES} attempts: {last_error}")


# =============================================================================
# SHOPIFY
# =============================================================================

class ShopifyRestClient(_PlatformClient):
    """
    Usage:
        async with ShopifyRestClient("mystore.myshopify.com", "shpat_xxx") as client:
            orders = await client.list_orders(created_at_min=since)
    """

    platform = "shopify"

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = SHOPIFY_API_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        super().__init__(
            base_url=f"https://{shop_domain}/admin/api/{api_version}",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _paginate(self, path: str, key: str, params: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        url: Optional[str] = path
        query: Optional[Dict[str, Any]] = {**params, "limit": PAGE_SIZE}
        while url:
            response = await self._get(url, params=query)
            for item in response.json().get(key, []):
                yield item
            # page_info URLs already carry every filter
            url = response.links.get("next", {}).get("url")
            query = None

    async def list_orders(self, created_at_min: datetime) -> List[Dict[str, Any]]:
        params = {"status": "any", "created_at_min": created_at_min.isoformat()}
        orders = [order async for order in self._paginate("/orders.json", "orders", params)]
        logger.info(f"[SHOPIFY_CLIENT] {self.shop_domain}: fetched {len(orders)} orders")
        return orders

    async def list_customers(self, created_at_min: datetime) -> List[Dict[str, Any]]:
        params = {"created_at_min": created_at_min.isoformat()}
        customers = [c async for c in self._paginate("/customers.json", "customers", params)]
        logger.info(f"[SHOPIFY_CLIENT] {self.shop_domain}: fetched {len(customers)} customers")
        return customers


# =============================================================================
# STRIPE
# =============================================================================

class StripeClient(_PlatformClient):
    """
    Usage:
        async with StripeClient("sk_live_xxx") as client:
            charges = await client.list_charges(created_gte=since)
    """

    platform = "stripe"

    def __init__(
        self,
        secret_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=STRIPE_API_BASE,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def _paginate(self, path: str, params: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        query = {**params, "limit": PAGE_SIZE}
        while True:
            page = (await self._get(path, params=query)).json()
            items = page.get("data", [])
            for item in items:
                yield item
            if not page.get("has_more") or not items:
                return
            query = {**query, "starting_after": items[-1]["id"]}

    async def list_charges(self, created_gte: datetime) -> List[Dict[str, Any]]:
        params = {"created[gte]": int(created_gte.timestamp())}
        charges = [charge async for charge in self._paginate("/charges", params)]
        logger.info(f"[STRIPE_CLIENT] Fetched {len(charges)} charges")
        return charges

    async def list_customers(self, created_gte: datetime) -> List[Dict[str, Any]]:
        params = {"created[gte]": int(created_gte.timestamp())}
        customers = [c async for c in self._paginate("/customers", params)]
        logger.info(f"[STRIPE_CLIENT] Fetched {len(customers)} customers")
        return customers


# =============================================================================
# GOOGLE ANALYTICS (GA4 Data API)
# =============================================================================

class GoogleAnalyticsClient(_PlatformClient):
    """
    Usage:
        async with GoogleAnalyticsClient("123456789", "ya29.xxx") as client:
            days = await client.daily_sessions(start_date, end_date)

    `property_id` accepts "123456789" or "properties/123456789". The access
    token is an OAuth token with analytics.readonly scope; refreshing it
    happens upstream, like the Shopify OAuth exchange.
    """

    platform = "google_analytics"

    def __init__(
        self,
        property_id: str,
        access_token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.property_id = property_id.split("/")[-1]
        super().__init__(
            base_url=GA4_DATA_API_BASE,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
            transport=transport,
        )

    async def run_report(self, request: Dict[str, Any]) -> List[Dict[str, Any]]:
        """All rows of a runReport request, following offset/limit paging."""
        path = f"/properties/{self.property_id}:runReport"
        body = {**request, "limit": GA4_PAGE_SIZE, "offset": 0}
        rows: List[Dict[str, Any]] = []
        while True:
            page = (await self._post(path, json=body)).json()
            batch = page.get("rows") or []
            rows.extend(batch)
            offset = body["offset"] + len(batch)
            if not batch or offset >= int(page.get("rowCount") or 0):
                return rows
            body = {**body, "offset": offset}

    async def daily_sessions(self, start_date: date, end_date: date) -> List[Tuple[date, int]]:
        """(day, sessions) per day in [start_date, end_date], property time zone."""
        rows = await self.run_report({
            "dateRanges": [{"startDate": start_date.isoformat(), "endDate": end_date.isoformat()}],
            "dimensions": [{"name": "date"}],
            "metrics": [{"name": "sessions"}],
            "orderBys": [{"dimension": {"dimensionName": "date"}}],
        })

        days: List[Tuple[date, int]] = []
        for row in rows:
            try:
                day = datetime.strptime(row["dimensionValues"][0]["value"], "%Y%m%d").date()
                sessions = int(row["metricValues"][0]["value"])
            except (KeyError, IndexError, TypeError, ValueError):
                logger.warning(f"[GOOGLE_ANALYTICS_CLIENT] Skipping malformed row: {row!r}")
                continue
            days.append((day, sessions))
        logger.info(f"[GOOGLE_ANALYTICS_CLIENT] Property {self.property_id}: {len(days)} days of sessions")
        return days
