"""Meta ad insight sync jobs.

WHAT:
    Job handlers for the two Meta job types:
    - meta_7d_fill: refetch the trailing 7 days of ad-level insights
    - meta_fresh: fetch from the day after the watermark up to
      today - attribution_window_days

WHY:
    Conversions keep being attributed to past days for the length of the
    attribution window, so the fresh job stops short of it and the fill job
    keeps re-reading the recent days until their numbers settle.

WATERMARK:
    Date grain ("YYYY-MM-DD"), key meta_fresh / meta_last_window_end. It is
    the last window end, not the newest row date, so a day without any
    delivery still counts as synced.

REFERENCES:
    - syncengine/services/meta_insights_client.py
    - syncengine/services/meta_persistence.py
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from syncengine.config import Settings, get_settings
from syncengine.schemas import JobResult, JobStats, RunDescriptor
from syncengine.services.context_resolver import MetaIntegrationContext, load_meta_context
from syncengine.services.cursors import CursorStore
from syncengine.services.meta_insights_client import MetaFetchResult, MetaInsightsClient
from syncengine.services.meta_persistence import persist_meta_insights
from syncengine.services.persistence import run_in_transaction
from syncengine.services.rate_limit import BackoffController
from syncengine.services.windowing import SyncWindow, fill_window, fresh_window, parse_cursor_date, utc_today

logger = logging.getLogger(__name__)

META_7D_FILL = "meta_7d_fill"
META_FRESH = "meta_fresh"

RateLimitCallback = Callable[[bool, Optional[datetime]], None]
MetaClientFactory = Callable[[MetaIntegrationContext, Settings, Optional[RateLimitCallback]], MetaInsightsClient]


def default_client_factory(
    ctx: MetaIntegrationContext,
    settings: Settings,
    on_rate_limit: Optional[RateLimitCallback] = None,
) -> MetaInsightsClient:
    return MetaInsightsClient(
        ctx.access_token,
        ctx.platform_ad_account_id,
        integration_id=str(ctx.integration_id),
        api_version=settings.META_API_VERSION,
        base_url=settings.META_API_BASE_URL,
        page_limit=settings.META_PAGE_LIMIT,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        stub_mode=settings.META_STUB_MODE,
        usage_threshold_pct=settings.META_USAGE_THRESHOLD_PCT,
        max_usage_wait=settings.META_MAX_USAGE_WAIT_SECONDS,
        on_rate_limit=on_rate_limit,
    )


def _backoff(settings: Settings) -> BackoffController:
    return BackoffController(
        initial_delay=settings.BACKOFF_INITIAL_SECONDS,
        max_delay=settings.BACKOFF_MAX_SECONDS,
        max_attempts=settings.BACKOFF_MAX_ATTEMPTS,
    )


def _stats(run: RunDescriptor, window: SyncWindow, previous: Optional[str], settings: Settings) -> JobStats:
    return JobStats(
        job_type=run.job_type,
        integration_id=str(run.integration_id),
        dates_requested=window.date_strings,
        window_start=window.start.isoformat(),
        window_end=window.end.isoformat(),
        cursor_previous=previous,
        cursor_next=previous,
        stub_mode_enabled=settings.META_STUB_MODE,
    )


def _record_fetch(stats: JobStats, result: MetaFetchResult) -> None:
    stats.fetched_rows = len(result.rows)
    stats.api_calls = result.api_calls
    stats.rate_limit_events = result.rate_limit_events
    stats.stubbed_days = result.stubbed_days


async def run_meta_7d_fill(
    db: Session,
    run: RunDescriptor,
    *,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
    client_factory: MetaClientFactory = default_client_factory,
    on_rate_limit: Optional[RateLimitCallback] = None,
) -> JobResult:
    """Refetch the trailing fill window; seed the watermark with its end if unset."""
    settings = settings or get_settings()
    today = today or utc_today()

    ctx = load_meta_context(db, run.integration_id, stub_mode=settings.META_STUB_MODE)
    cursor = CursorStore.meta(ctx.integration_id)
    previous = cursor.read(db)
    db.commit()  # close the read transaction before network I/O

    window = fill_window(today, days=settings.FILL_WINDOW_DAYS)
    stats = _stats(run, window, previous, settings)
    stats.cursor_initialized = False
    if window.is_empty:
        logger.info("[META_SYNC] Empty fill window for %s, nothing to do", ctx.integration_id)
        return JobResult(stats=stats)

    logger.info(
        "[META_SYNC] 7d fill for %s: %s..%s",
        ctx.platform_ad_account_id, window.start, window.end,
    )
    client = client_factory(ctx, settings, on_rate_limit)
    result = await client.fetch_window(window.dates, _backoff(settings))
    _record_fetch(stats, result)
    seed = window.end.isoformat()

    def work(session: Session):
        outcome = persist_meta_insights(session, ctx, result.rows)
        return outcome, cursor.initialize_if_absent(session, seed)

    outcome, initialized = run_in_transaction(db, work, statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS)

    stats.persisted_rows = outcome.persisted_rows
    stats.dates_affected = outcome.date_strings
    stats.cursor_initialized = initialized
    if initialized:
        stats.cursor_next = seed

    logger.info(
        "[META_SYNC] 7d fill done for %s: fetched=%d persisted=%d calls=%d cursor_initialized=%s",
        ctx.platform_ad_account_id, stats.fetched_rows, stats.persisted_rows, stats.api_calls, initialized,
    )
    return JobResult(stats=stats)


async def run_meta_fresh(
    db: Session,
    run: RunDescriptor,
    *,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
    client_factory: MetaClientFactory = default_client_factory,
    on_rate_limit: Optional[RateLimitCallback] = None,
) -> JobResult:
    """Fetch the dates after the watermark that are outside the attribution window.

    First run (no watermark) starts META_DEFAULT_LOOKBACK_DAYS back. The
    watermark advances to the window end, and only forward.
    """
    settings = settings or get_settings()
    today = today or utc_today()

    ctx = load_meta_context(db, run.integration_id, stub_mode=settings.META_STUB_MODE)
    cursor = CursorStore.meta(ctx.integration_id)
    previous = cursor.read(db)
    db.commit()

    window = fresh_window(
        today,
        watermark_date=parse_cursor_date(previous),
        default_lookback_days=settings.META_DEFAULT_LOOKBACK_DAYS,
        lag_days=ctx.attribution_window_days,
    )
    stats = _stats(run, window, previous, settings)
    stats.cursor_advanced = False
    if window.is_empty:
        logger.info(
            "[META_SYNC] Empty fresh window for %s (cursor=%s, attribution=%dd)",
            ctx.integration_id, previous, ctx.attribution_window_days,
        )
        return JobResult(stats=stats)

    logger.info("[META_SYNC] Fresh sync for %s: %s..%s", ctx.platform_ad_account_id, window.start, window.end)
    client = client_factory(ctx, settings, on_rate_limit)
    result = await client.fetch_window(window.dates, _backoff(settings))
    _record_fetch(stats, result)
    candidate = window.end.isoformat()

    def work(session: Session):
        outcome = persist_meta_insights(session, ctx, result.rows)
        return outcome, cursor.advance_if_greater(session, candidate)

    outcome, advanced = run_in_transaction(db, work, statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS)

    stats.persisted_rows = outcome.persisted_rows
    stats.dates_affected = outcome.date_strings
    stats.cursor_advanced = advanced
    if advanced:
        stats.cursor_next = candidate

    logger.info(
        "[META_SYNC] Fresh sync done for %s: fetched=%d persisted=%d cursor %s -> %s (advanced=%s)",
        ctx.platform_ad_account_id, stats.fetched_rows, stats.persisted_rows, previous, stats.cursor_next, advanced,
    )
    return JobResult(stats=stats)
