"""Meta Marketing API insights client.

WHAT:
    Fetches ad-level daily insights for one ad account, one request per date,
    following `paging.next` links until exhausted.

WHY:
    The facebook_business SDK hides response headers, but the usage headers
    (X-Ad-Account-Usage, X-FB-Ads-Insights-Throttle, X-Business-Use-Case) are
    what drive reactive throttling. Calling the Graph API directly with httpx
    keeps them visible.

RATE LIMITING:
    - Hard limits (HTTP 429/613, error codes 4/17/613): BackoffController,
      2s doubling to 60s, 5 attempts, then RateLimitExhausted.
    - Soft limits: when utilisation reaches the threshold, sleep the time the
      headers say access regains (capped) before the next call.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
    - https://developers.facebook.com/docs/marketing-api/overview/rate-limiting
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from syncengine.errors import ApiError
from syncengine.services.meta_normalizer import NormalizedMetaInsight, build_stub_insights, normalize_insight
from syncengine.services.rate_limit import (
    BackoffController,
    is_meta_rate_limit,
    meta_usage_delay,
    parse_meta_rate_limit_headers,
)

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "v19.0"
DEFAULT_BASE_URL = "https://graph.facebook.com"

INSIGHT_FIELDS = [
    "ad_id",
    "adset_id",
    "campaign_id",
    "date_start",
    "date_stop",
    "spend",
    "impressions",
    "clicks",
    "actions",
    "action_values",
    "ad_effective_status",
]
EFFECTIVE_STATUS_FILTER = [{"field": "ad.effective_status", "operator": "IN", "value": ["ACTIVE", "PAUSED"]}]

# on_rate_limit(active, reset_at): lets the caller surface the wait on the run record
RateLimitCallback = Callable[[bool, Optional[datetime]], None]


class MetaAPIError(ApiError):
    """Non-rate-limit failure from the Graph API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None, error_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, body=body)
        self.error_code = error_code


@dataclass
class MetaDayResult:
    rows: List[NormalizedMetaInsight] = field(default_factory=list)
    api_calls: int = 0
    stubbed: bool = False


@dataclass
class MetaFetchResult:
    rows: List[NormalizedMetaInsight] = field(default_factory=list)
    api_calls: int = 0
    rate_limit_events: int = 0
    stubbed_days: int = 0


def _error_code(body: Any) -> Optional[int]:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("code"), int):
            return error["code"]
    return None


class MetaInsightsClient:
    """Insights reader for a single ad account.

    Usage:
        client = MetaInsightsClient(access_token, "act_123")
        result = await client.fetch_window([date(2024, 1, 1)], BackoffController())
    """

    def __init__(
        self,
        access_token: str,
        platform_ad_account_id: str,
        *,
        integration_id: str = "",
        api_version: str = DEFAULT_API_VERSION,
        base_url: str = DEFAULT_BASE_URL,
        page_limit: int = 500,
        timeout: float = 30.0,
        stub_mode: bool = False,
        usage_threshold_pct: float = 80.0,
        max_usage_wait: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_rate_limit: Optional[RateLimitCallback] = None,
    ):
        self.access_token = access_token
        self.platform_ad_account_id = platform_ad_account_id
        self.integration_id = integration_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self.timeout = timeout
        self.stub_mode = stub_mode
        self.usage_threshold_pct = usage_threshold_pct
        self.max_usage_wait = max_usage_wait
        self._transport = transport
        self._sleep = sleep
        self._on_rate_limit = on_rate_limit

    @property
    def insights_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.platform_ad_account_id}/insights"

    def _params(self, day: date) -> Dict[str, str]:
        return {
            "level": "ad",
            "time_increment": "1",
            "limit": str(self.page_limit),
            "fields": ",".join(INSIGHT_FIELDS),
            "filtering": json.dumps(EFFECTIVE_STATUS_FILTER),
            "time_range": json.dumps({"since": day.isoformat(), "until": day.isoformat()}),
            "access_token": self.access_token,
        }

    def _notify(self, active: bool, reset_at: Optional[datetime] = None) -> None:
        if self._on_rate_limit is not None:
            self._on_rate_limit(active, reset_at)

    async def _get(
        self,
        http: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, str]],
        backoff: BackoffController,
    ) -> Dict[str, Any]:
        """GET one page, backing off on rate-limit responses.

        Raises:
            RateLimitExhausted: When throttling outlasts the backoff ceiling
            MetaAPIError: On any other non-2xx response
        """
        throttled = False
        while True:
            response = await http.get(url, params=params)
            try:
                body = response.json()
            except ValueError:
                body = None
            error_code = _error_code(body)

            if is_meta_rate_limit(response.status_code, error_code):
                throttled = True
                backoff.record_throttle_event()
                delay = backoff.next_delay()
                logger.warning(
                    "[META_INSIGHTS] Rate limited (status=%s code=%s), waiting %.1fs (attempt %d/%d)",
                    response.status_code, error_code, delay, backoff.attempts, backoff.max_attempts,
                )
                self._notify(True, datetime.now(timezone.utc) + timedelta(seconds=delay))
                await self._sleep(delay)
                continue

            if response.status_code >= 400 or body is None:
                text = response.text
                raise MetaAPIError(
                    f"Meta API request failed ({response.status_code}): {text[:500]}",
                    status_code=response.status_code,
                    body=text[:2000],
                    error_code=error_code,
                )

            if throttled:
                self._notify(False)
            backoff.reset()

            wait = meta_usage_delay(
                parse_meta_rate_limit_headers(response.headers),
                threshold_pct=self.usage_threshold_pct,
                max_wait=self.max_usage_wait,
            )
            if wait > 0:
                backoff.record_reactive_wait()
                logger.info("[META_INSIGHTS] Usage above %.0f%%, waiting %.1fs", self.usage_threshold_pct, wait)
                await self._sleep(wait)

            return body

    async def fetch_day(self, http: Optional[httpx.AsyncClient], day: date, backoff: BackoffController) -> MetaDayResult:
        """All insight rows for one date; synthetic rows in stub mode."""
        if self.stub_mode:
            return MetaDayResult(rows=build_stub_insights(self.integration_id, day), stubbed=True)

        result = MetaDayResult()
        url: str = self.insights_url
        params: Optional[Dict[str, str]] = self._params(day)

        while True:
            body = await self._get(http, url, params, backoff)
            result.api_calls += 1

            data = body.get("data") or []
            if not data:
                break
            for row in data:
                normalized = normalize_insight(row, day)
                if normalized is not None:
                    result.rows.append(normalized)

            next_url = (body.get("paging") or {}).get("next")
            if not next_url:
                break
            # The next link already carries every query parameter
            url, params = next_url, None

        return result

    async def fetch_window(self, dates: List[date], backoff: BackoffController) -> MetaFetchResult:
        """Fetch each date sequentially and accumulate rows and counters."""
        if not self.access_token and not self.stub_mode:
            raise MetaAPIError("Meta access token is required when stub mode is disabled")

        result = MetaFetchResult()
        events_before = backoff.events

        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as http:
            for day in dates:
                day_result = await self.fetch_day(http, day, backoff)
                result.rows.extend(day_result.rows)
                result.api_calls += day_result.api_calls
                if day_result.stubbed:
                    result.stubbed_days += 1

        result.rate_limit_events = backoff.events - events_before
        logger.info(
            "[META_INSIGHTS] Fetched %d rows for %s over %d dates (calls=%d, stubbed_days=%d, rate_limit_events=%d)",
            len(result.rows), self.platform_ad_account_id, len(dates),
            result.api_calls, result.stubbed_days, result.rate_limit_events,
        )
        return result
