"""Shopify order sync jobs.

WHAT:
    Job handlers for the two Shopify job types:
    - shopify_7d_fill: refetch orders created in the trailing 7 days
    - shopify_fresh: fetch orders updated since the stored watermark

WHY:
    Fresh runs keep the warehouse current cheaply; the fill job is a fixed
    backstop that repairs anything a fresh run missed. Both share the same
    persistence pipeline and the same watermark row
    (shopify_fresh / last_synced_order_updated_at).

FLOW:
    resolve context -> window -> (empty: no-op) -> fetch -> persist + cursor -> stats

REFERENCES:
    - syncengine/services/shopify_client.py
    - syncengine/services/shopify_persistence.py
    - syncengine/services/cursors.py
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from syncengine.config import Settings, get_settings
from syncengine.schemas import JobResult, JobStats, RunDescriptor
from syncengine.services.context_resolver import ShopifyIntegrationContext, load_shopify_context
from syncengine.services.cursors import CursorStore
from syncengine.services.persistence import run_in_transaction
from syncengine.services.rate_limit import BackoffController
from syncengine.services.shopify_client import ShopifyClient, ShopifyFetchResult
from syncengine.services.shopify_persistence import persist_shopify_orders
from syncengine.services.windowing import (
    SyncWindow,
    day_start_iso,
    fill_window,
    fresh_window,
    to_cursor_timestamp,
    utc_today,
    watermark_date_for_timestamp,
)

logger = logging.getLogger(__name__)

SHOPIFY_7D_FILL = "shopify_7d_fill"
SHOPIFY_FRESH = "shopify_fresh"

RateLimitCallback = Callable[[bool, Optional[datetime]], None]
ShopifyClientFactory = Callable[[ShopifyIntegrationContext, Settings, Optional[RateLimitCallback]], ShopifyClient]


def default_client_factory(
    ctx: ShopifyIntegrationContext,
    settings: Settings,
    on_rate_limit: Optional[RateLimitCallback] = None,
) -> ShopifyClient:
    return ShopifyClient(
        shop_domain=ctx.shop_domain,
        access_token=ctx.access_token,
        api_version=settings.SHOPIFY_API_VERSION,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        page_size=settings.SHOPIFY_PAGE_SIZE,
        on_rate_limit=on_rate_limit,
    )


def _backoff(settings: Settings) -> BackoffController:
    return BackoffController(
        initial_delay=settings.BACKOFF_INITIAL_SECONDS,
        max_delay=settings.BACKOFF_MAX_SECONDS,
        max_attempts=settings.BACKOFF_MAX_ATTEMPTS,
    )


def _stats(run: RunDescriptor, window: SyncWindow, previous: Optional[str]) -> JobStats:
    return JobStats(
        job_type=run.job_type,
        integration_id=str(run.integration_id),
        dates_requested=window.date_strings,
        window_start=window.start.isoformat(),
        window_end=window.end.isoformat(),
        cursor_previous=previous,
        cursor_next=previous,
    )


def _upper_bound(window: SyncWindow) -> str:
    # Exclusive: start of the day after the window
    return day_start_iso(window.end + timedelta(days=1))


def _record_fetch(stats: JobStats, result: ShopifyFetchResult) -> None:
    stats.fetched_rows = len(result.orders)
    stats.api_calls = result.api_calls
    stats.rate_limit_events = result.rate_limit_events


# =============================================================================
# SHOPIFY 7-DAY FILL
# =============================================================================

async def run_shopify_7d_fill(
    db: Session,
    run: RunDescriptor,
    *,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
    client_factory: ShopifyClientFactory = default_client_factory,
    on_rate_limit: Optional[RateLimitCallback] = None,
) -> JobResult:
    """Refetch orders created in the trailing fill window.

    The watermark is only seeded (initialize_if_absent) with the newest
    updatedAt seen, capped at the window's exclusive end, so a fill never
    moves a cursor a fresh run already set.
    """
    settings = settings or get_settings()
    today = today or utc_today()

    ctx = load_shopify_context(db, run.integration_id)
    cursor = CursorStore.shopify(ctx.integration_id)
    previous = cursor.read(db)
    db.commit()  # close the read transaction before network I/O

    window = fill_window(today, days=settings.FILL_WINDOW_DAYS)
    stats = _stats(run, window, previous)
    stats.cursor_initialized = False
    if window.is_empty:
        logger.info("[SHOPIFY_SYNC] Empty fill window for %s, nothing to do", ctx.integration_id)
        return JobResult(stats=stats)

    search_query = f"created_at:>='{day_start_iso(window.start)}' created_at:<'{_upper_bound(window)}'"
    logger.info("[SHOPIFY_SYNC] 7d fill for %s: %s", ctx.shop_domain, search_query)

    client = client_factory(ctx, settings, on_rate_limit)
    result = await client.fetch_orders(search_query, "CREATED_AT", _backoff(settings))
    _record_fetch(stats, result)
    seed = to_cursor_timestamp(result.max_updated_at)
    if seed:
        # Orders created in the window may have been updated after it; a seed
        # past the window end would hide older updates from the next fresh run
        seed = min(seed, _upper_bound(window))

    def work(session: Session):
        outcome = persist_shopify_orders(session, ctx, result.orders)
        initialized = cursor.initialize_if_absent(session, seed) if seed else False
        return outcome, initialized

    outcome, initialized = run_in_transaction(db, work, statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS)

    stats.persisted_rows = outcome.persisted_rows
    stats.dates_affected = outcome.date_strings
    stats.cursor_initialized = initialized
    if initialized:
        stats.cursor_next = seed

    logger.info(
        "[SHOPIFY_SYNC] 7d fill done for %s: fetched=%d persisted=%d dates=%d cursor_initialized=%s",
        ctx.shop_domain, stats.fetched_rows, stats.persisted_rows, len(stats.dates_affected), initialized,
    )
    return JobResult(stats=stats)


# =============================================================================
# SHOPIFY FRESH
# =============================================================================

async def run_shopify_fresh(
    db: Session,
    run: RunDescriptor,
    *,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
    client_factory: ShopifyClientFactory = default_client_factory,
    on_rate_limit: Optional[RateLimitCallback] = None,
) -> JobResult:
    """Fetch orders updated since the watermark, up to the end of yesterday.

    The watermark is a UTC timestamp; the window starts on its own date and
    the search is inclusive of it, so the newest order is refetched rather
    than risking a gap. The cursor only moves forward: max(previous, newest).
    """
    settings = settings or get_settings()
    today = today or utc_today()

    ctx = load_shopify_context(db, run.integration_id)
    cursor = CursorStore.shopify(ctx.integration_id)
    previous = cursor.read(db)
    db.commit()

    window = fresh_window(
        today,
        watermark_date=watermark_date_for_timestamp(previous),
        default_lookback_days=settings.SHOPIFY_DEFAULT_LOOKBACK_DAYS,
        resume_on_watermark_day=True,
    )
    stats = _stats(run, window, previous)
    stats.cursor_advanced = False
    if window.is_empty:
        logger.info("[SHOPIFY_SYNC] Empty fresh window for %s (cursor=%s)", ctx.integration_id, previous)
        return JobResult(stats=stats)

    since = previous or day_start_iso(window.start)
    search_query = f"updated_at:>='{since}' updated_at:<'{_upper_bound(window)}'"
    logger.info("[SHOPIFY_SYNC] Fresh sync for %s: %s", ctx.shop_domain, search_query)

    client = client_factory(ctx, settings, on_rate_limit)
    result = await client.fetch_orders(search_query, "UPDATED_AT", _backoff(settings))
    _record_fetch(stats, result)

    candidates = [value for value in (previous, to_cursor_timestamp(result.max_updated_at)) if value]
    candidate = max(candidates) if candidates else None

    def work(session: Session):
        outcome = persist_shopify_orders(session, ctx, result.orders)
        advanced = cursor.advance_if_greater(session, candidate) if candidate else False
        return outcome, advanced

    outcome, advanced = run_in_transaction(db, work, statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS)

    stats.persisted_rows = outcome.persisted_rows
    stats.dates_affected = outcome.date_strings
    stats.cursor_advanced = advanced
    if advanced:
        stats.cursor_next = candidate

    logger.info(
        "[SHOPIFY_SYNC] Fresh sync done for %s: fetched=%d persisted=%d cursor %s -> %s (advanced=%s)",
        ctx.shop_domain, stats.fetched_rows, stats.persisted_rows, previous, stats.cursor_next, advanced,
    )
    return JobResult(stats=stats)
