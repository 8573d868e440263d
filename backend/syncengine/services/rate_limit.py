"""Rate-limit handling shared by the platform clients.

WHAT:
    - BackoffController: explicit exponential-backoff state for hard rate-limit
      responses (HTTP 429, Meta 613 / codes 4, 17, 613, Shopify "throttled").
    - Meta usage headers: reactive waits when account/app utilisation is high.
    - Shopify cost extension: cooperative waits when the query budget runs low.

WHY:
    One controller object is created per run and passed by reference into every
    request, so attempts and events accumulate in one place and the request
    loop stays a plain loop.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/overview/rate-limiting
    - https://shopify.dev/docs/api/usage/rate-limits#graphql-admin-api-rate-limits
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from syncengine.errors import RateLimitExhausted

logger = logging.getLogger(__name__)

# Meta error codes that mean "throttled" even on a 400 response
META_RATE_LIMIT_ERROR_CODES = {4, 17, 613}
META_RATE_LIMIT_STATUSES = {429, 613}

SHOPIFY_DEFAULT_RESTORE_RATE = 50.0
SHOPIFY_BUDGET_FLOOR = 0.2
SHOPIFY_WAIT_PADDING_SECONDS = 0.2


class BackoffController:
    """Exponential backoff for hard rate-limit responses.

    Usage:
        backoff = BackoffController()
        while True:
            response = await send()
            if is_rate_limited(response):
                backoff.record_throttle_event()   # raises once attempts run out
                await sleep(backoff.next_delay())
                continue
            backoff.reset()
            break
    """

    def __init__(self, initial_delay: float = 2.0, max_delay: float = 60.0, max_attempts: int = 5):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.attempts = 0
        self.events = 0
        self._delay = initial_delay

    def record_throttle_event(self) -> None:
        """Count one rate-limited response.

        Raises:
            RateLimitExhausted: When this response exhausts the attempt ceiling
        """
        self.attempts += 1
        self.events += 1
        if self.attempts >= self.max_attempts:
            raise RateLimitExhausted(
                f"Platform rate limit persisted after {self.attempts} attempts",
                attempts=self.attempts,
            )

    def next_delay(self) -> float:
        """Delay before the next attempt; doubles on each call, capped at max_delay."""
        delay = min(self._delay, self.max_delay)
        self._delay = min(self._delay * 2, self.max_delay)
        return delay

    def record_reactive_wait(self) -> None:
        """Count a usage-driven wait that did not consume an attempt."""
        self.events += 1

    def reset(self) -> None:
        """Clear the attempt streak after a successful response."""
        self.attempts = 0
        self._delay = self.initial_delay


# =============================================================================
# META USAGE HEADERS
# =============================================================================

@dataclass
class MetaRateLimitInfo:
    ad_account_util_pct: Optional[float] = None
    app_util_pct: Optional[float] = None
    acc_id_util_pct: Optional[float] = None
    reset_time_duration: Optional[float] = None
    estimated_time_to_regain_access: Optional[float] = None
    ads_api_access_tier: Optional[str] = None

    @property
    def max_util_pct(self) -> float:
        return max(self.ad_account_util_pct or 0, self.app_util_pct or 0, self.acc_id_util_pct or 0)


def _load_header(headers: Mapping[str, str], name: str) -> Optional[Any]:
    raw = headers.get(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("[RATE_LIMIT] Ignoring malformed %s header: %r", name, raw)
        return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _regain_access_seconds(parsed: Any) -> Optional[float]:
    """X-Business-Use-Case is either flat or keyed by business id -> list of usages."""
    if not isinstance(parsed, dict):
        return None
    direct = _number(parsed.get("estimated_time_to_regain_access"))
    if direct is not None:
        return direct

    waits = []
    for usages in parsed.values():
        if isinstance(usages, dict):
            usages = [usages]
        if not isinstance(usages, list):
            continue
        for usage in usages:
            if isinstance(usage, dict):
                value = _number(usage.get("estimated_time_to_regain_access"))
                if value is not None:
                    waits.append(value)
    return max(waits) if waits else None


def parse_meta_rate_limit_headers(headers: Mapping[str, str]) -> MetaRateLimitInfo:
    """Extract utilisation and reset hints from Meta response headers."""
    info = MetaRateLimitInfo()

    account_usage = _load_header(headers, "X-Ad-Account-Usage")
    if isinstance(account_usage, dict):
        info.ad_account_util_pct = _number(account_usage.get("acc_id_util_pct"))
        info.reset_time_duration = _number(account_usage.get("reset_time_duration"))
        tier = account_usage.get("ads_api_access_tier")
        info.ads_api_access_tier = tier if isinstance(tier, str) else None

    insights_throttle = _load_header(headers, "X-FB-Ads-Insights-Throttle")
    if isinstance(insights_throttle, dict):
        info.app_util_pct = _number(insights_throttle.get("app_id_util_pct"))
        info.acc_id_util_pct = _number(insights_throttle.get("acc_id_util_pct"))
        if info.ads_api_access_tier is None:
            tier = insights_throttle.get("ads_api_access_tier")
            info.ads_api_access_tier = tier if isinstance(tier, str) else None

    info.estimated_time_to_regain_access = _regain_access_seconds(
        _load_header(headers, "X-Business-Use-Case")
    )
    return info


def meta_usage_delay(info: MetaRateLimitInfo, threshold_pct: float = 80.0, max_wait: float = 300.0) -> float:
    """Seconds to wait before the next Meta call; 0 below the utilisation threshold."""
    if info.max_util_pct < threshold_pct:
        return 0.0
    if info.estimated_time_to_regain_access:
        wait = info.estimated_time_to_regain_access
    else:
        wait = info.reset_time_duration or 60.0
    return min(wait, max_wait)


def is_meta_rate_limit(status_code: int, error_code: Optional[int] = None) -> bool:
    return status_code in META_RATE_LIMIT_STATUSES or error_code in META_RATE_LIMIT_ERROR_CODES


# =============================================================================
# SHOPIFY QUERY COST
# =============================================================================

def shopify_throttle_delay(throttle_status: Optional[Dict[str, Any]], requested_cost: Optional[float] = None) -> float:
    """Seconds to wait before the next Shopify page.

    Args:
        throttle_status: `extensions.cost.throttleStatus` of the last response
        requested_cost: `extensions.cost.requestedQueryCost` of the last response

    Returns:
        0 while more than 20% of the bucket remains or the next query fits,
        otherwise deficit / restoreRate plus a small padding.
    """
    if not throttle_status:
        return 0.0

    available = float(throttle_status.get("currentlyAvailable") or 0)
    maximum = float(throttle_status.get("maximumAvailable") or 0)
    if available > maximum * SHOPIFY_BUDGET_FLOOR:
        return 0.0

    requested = float(requested_cost or throttle_status.get("requestedQueryCost") or 0)
    if requested == 0 or requested <= available:
        return 0.0

    deficit = requested - available
    restore_rate = float(throttle_status.get("restoreRate") or 0)
    if restore_rate <= 0:
        restore_rate = SHOPIFY_DEFAULT_RESTORE_RATE
    return deficit / restore_rate + SHOPIFY_WAIT_PADDING_SECONDS
