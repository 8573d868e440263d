"""Shopify GraphQL Admin API client for order sync.

WHAT:
    Async wrapper over the Admin GraphQL endpoint with:
    - Access-token authentication
    - Cursor pagination (pageInfo.hasNextPage / endCursor)
    - Cooperative throttling from the query-cost extension
    - Exponential backoff on 429 / "throttled" errors via BackoffController

WHY:
    The order ledger is the revenue source of truth. Fetching goes through one
    client so every page is counted and throttled the same way.

REFERENCES:
    - Shopify GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-graphql
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from syncengine.errors import ApiError
from syncengine.services.rate_limit import BackoffController, shopify_throttle_delay
from syncengine.services.shopify_normalizer import NormalizedShopifyOrder, normalize_order
from syncengine.services.windowing import to_cursor_timestamp

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2025-01"
DEFAULT_PAGE_SIZE = 100

ORDERS_QUERY = """
query FetchOrders($first: Int!, $cursor: String, $query: String!, $sortKey: OrderSortKeys!) {
    orders(first: $first, after: $cursor, query: $query, sortKey: $sortKey) {
        edges {
            cursor
            node {
                id
                name
                createdAt
                updatedAt
                cancelledAt
                closedAt
                displayFinancialStatus
                displayFulfillmentStatus
                currencyCode
                tags
                sourceName
                currentTotalPriceSet { shopMoney { amount currencyCode } }
                totalPriceSet { shopMoney { amount currencyCode } }
                subtotalPriceSet { shopMoney { amount currencyCode } }
                totalRefundedSet { shopMoney { amount currencyCode } }
                totalDiscountsSet { shopMoney { amount currencyCode } }
                totalShippingPriceSet { shopMoney { amount currencyCode } }
                totalTaxSet { shopMoney { amount currencyCode } }
                channelInformation {
                    channelDefinition {
                        channelName
                        handle
                    }
                }
                customer {
                    id
                    email
                    firstName
                    lastName
                    numberOfOrders
                    tags
                }
                shippingAddress {
                    province
                    provinceCode
                    country
                    countryCodeV2
                }
                lineItems(first: 50) {
                    edges {
                        node {
                            id
                            title
                            variantTitle
                            sku
                            quantity
                            product { id title }
                            variant { id title sku }
                            originalUnitPriceSet { shopMoney { amount currencyCode } }
                            discountedUnitPriceSet { shopMoney { amount currencyCode } }
                        }
                    }
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""


class ShopifyAPIError(ApiError):
    """Non-rate-limit failure from the Shopify Admin API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None, errors: Optional[List] = None):
        super().__init__(message, status_code=status_code, body=body)
        self.errors = errors or []


@dataclass
class ShopifyFetchResult:
    orders: List[NormalizedShopifyOrder] = field(default_factory=list)
    max_updated_at: Optional[str] = None  # canonical "YYYY-MM-DDTHH:MM:SSZ"
    api_calls: int = 0
    rate_limit_events: int = 0


class ShopifyClient:
    """GraphQL client for the Shopify Admin API.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        result = await client.fetch_orders("created_at:>='2024-01-01T00:00:00Z'", "CREATED_AT", backoff)
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_rate_limit: Optional[Callable[[bool, Optional[datetime]], None]] = None,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Admin API offline access token
            api_version: API version to use
            timeout: Per-request deadline in seconds
            page_size: Orders per page (max 250)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Awaitable sleep used for throttling and backoff
            on_rate_limit: Called with (True, reset_at) when a backoff wait starts
                and (False, None) once a request succeeds again
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self.timeout = timeout
        self.page_size = page_size
        self._transport = transport
        self._sleep = sleep
        self._on_rate_limit = on_rate_limit

        logger.info("[SHOPIFY_CLIENT] Initialized for %s (API version: %s)", shop_domain, api_version)

    def _notify(self, active: bool, delay: float = 0.0) -> None:
        if self._on_rate_limit is not None:
            reset_at = datetime.now(timezone.utc) + timedelta(seconds=delay) if active else None
            self._on_rate_limit(active, reset_at)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport)

    async def execute(
        self,
        http: httpx.AsyncClient,
        query: str,
        variables: Dict[str, Any],
        backoff: BackoffController,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Execute one GraphQL request, retrying only on rate limits.

        Args:
            http: Open httpx client
            query: GraphQL query string
            variables: Query variables
            backoff: Run-scoped backoff controller

        Returns:
            Tuple of (data, cost extension)

        Raises:
            RateLimitExhausted: When throttling outlasts the backoff ceiling
            ShopifyAPIError: On any other failed response
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        throttled = False
        while True:
            response = await http.post(self.base_url, json={"query": query, "variables": variables}, headers=headers)

            if response.status_code == 429:
                backoff.record_throttle_event()
                delay = backoff.next_delay()
                retry_after = _retry_after_seconds(response)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                logger.warning(
                    "[SHOPIFY_CLIENT] Rate limited (429), waiting %.1fs (attempt %d/%d)",
                    delay, backoff.attempts, backoff.max_attempts,
                )
                throttled = True
                self._notify(True, delay)
                await self._sleep(delay)
                continue

            if response.status_code >= 400:
                body = response.text
                raise ShopifyAPIError(
                    f"Shopify GraphQL request failed ({response.status_code}): {body[:500]}",
                    status_code=response.status_code,
                    body=body[:2000],
                )

            payload = response.json()
            errors = payload.get("errors") or []
            if not isinstance(errors, list):
                errors = [errors]
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]

            if any("throttled" in message.lower() for message in messages):
                backoff.record_throttle_event()
                delay = backoff.next_delay()
                logger.warning(
                    "[SHOPIFY_CLIENT] Throttled, waiting %.1fs (attempt %d/%d)",
                    delay, backoff.attempts, backoff.max_attempts,
                )
                throttled = True
                self._notify(True, delay)
                await self._sleep(delay)
                continue

            if errors:
                logger.error("[SHOPIFY_CLIENT] GraphQL errors: %s", messages)
                raise ShopifyAPIError(f"Shopify GraphQL error: {'; '.join(messages)}", status_code=response.status_code, errors=errors)

            data = payload.get("data")
            if data is None:
                raise ShopifyAPIError("Shopify GraphQL returned no data", status_code=response.status_code, body=response.text[:2000])

            if throttled:
                self._notify(False)
            backoff.reset()
            cost = (payload.get("extensions") or {}).get("cost") or {}
            return data, cost

    async def fetch_orders(
        self,
        search_query: str,
        sort_key: str,
        backoff: BackoffController,
    ) -> ShopifyFetchResult:
        """Fetch and normalize every order matching a search query.

        Args:
            search_query: Shopify search syntax (e.g. "updated_at:>='...'")
            sort_key: CREATED_AT for fills, UPDATED_AT for fresh syncs
            backoff: Run-scoped backoff controller

        Returns:
            ShopifyFetchResult with orders de-duplicated by id (last page wins)
        """
        result = ShopifyFetchResult()
        events_before = backoff.events
        by_id: Dict[str, NormalizedShopifyOrder] = {}
        cursor: Optional[str] = None

        async with self._http_client() as http:
            while True:
                variables: Dict[str, Any] = {"first": self.page_size, "query": search_query, "sortKey": sort_key}
                if cursor:
                    variables["cursor"] = cursor

                data, cost = await self.execute(http, ORDERS_QUERY, variables, backoff)
                result.api_calls += 1

                connection = data.get("orders")
                if not connection:
                    break

                for edge in connection.get("edges") or []:
                    order = normalize_order(edge["node"])
                    by_id[order.shopify_order_id] = order
                    # Canonical UTC form; raw strings with offsets do not sort by time
                    updated_at = to_cursor_timestamp(order.order_updated_at)
                    if updated_at and (result.max_updated_at is None or updated_at > result.max_updated_at):
                        result.max_updated_at = updated_at

                page_info = connection.get("pageInfo") or {}
                has_next = bool(page_info.get("hasNextPage"))
                cursor = page_info.get("endCursor") if has_next else None

                wait = shopify_throttle_delay(cost.get("throttleStatus"), cost.get("requestedQueryCost"))
                if wait > 0:
                    logger.info("[SHOPIFY_CLIENT] Query budget low, waiting %.2fs before next page", wait)
                    await self._sleep(wait)

                if not has_next:
                    break
                if not cursor:
                    logger.warning(
                        "[SHOPIFY_CLIENT] hasNextPage without endCursor for %s, stopping pagination",
                        self.shop_domain,
                    )
                    break

        result.orders = list(by_id.values())
        result.rate_limit_events = backoff.events - events_before
        logger.info(
            "[SHOPIFY_CLIENT] Fetched %d orders in %d calls for %s",
            len(result.orders), result.api_calls, self.shop_domain,
        )
        return result


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
