"""Date windows for fill and fresh jobs.

WHAT:
    Pure functions computing the calendar dates a job should fetch.

WHY:
    Fill jobs are a fixed backstop (trailing N days ending yesterday) that does
    not depend on prior runs; fresh jobs resume just after the watermark.
    Keeping both pure (explicit `today`) makes every boundary testable.

WATERMARK GRAIN:
    - Meta cursors are dates: the fresh window starts the day after.
    - Shopify cursors are UTC timestamps: `watermark_date_for_timestamp`
      truncates to the timestamp's own date, because later updates on that
      same day are still unsynced.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional


@dataclass(frozen=True)
class SyncWindow:
    start: date
    end: date
    dates: List[date] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.dates

    @property
    def date_strings(self) -> List[str]:
        return [d.isoformat() for d in self.dates]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def enumerate_dates(start: date, end: date) -> List[date]:
    """Inclusive ascending list of dates; empty when start > end."""
    days = (end - start).days
    return [start + timedelta(days=offset) for offset in range(days + 1)]


def fill_window(today: date, days: int = 7) -> SyncWindow:
    """Trailing `days` dates ending yesterday."""
    end = today - timedelta(days=1)
    start = end - timedelta(days=days - 1)
    return SyncWindow(start=start, end=end, dates=enumerate_dates(start, end))


def fresh_window(
    today: date,
    *,
    watermark_date: Optional[date],
    default_lookback_days: int,
    lag_days: int = 1,
    resume_on_watermark_day: bool = False,
) -> SyncWindow:
    """Window for an incremental run.

    Args:
        today: Current UTC date
        watermark_date: Date of the stored cursor, None on first run
        default_lookback_days: How far back the first run reaches
        lag_days: Days excluded at the end; 1 ends yesterday, an attribution
            window of N ends at today - N so conversions can settle
        resume_on_watermark_day: Start on the watermark's own date instead of
            the next one (timestamp-grain cursors)

    Returns:
        SyncWindow; empty when the computed start is after the end
    """
    end = today - timedelta(days=lag_days)
    if watermark_date is None:
        start = today - timedelta(days=default_lookback_days)
    elif resume_on_watermark_day:
        start = watermark_date
    else:
        start = watermark_date + timedelta(days=1)
    return SyncWindow(start=start, end=end, dates=enumerate_dates(start, end))


def parse_cursor_date(value: Optional[str]) -> Optional[date]:
    """Date-grain cursor ("YYYY-MM-DD") to a date; None when unset."""
    if not value:
        return None
    return date.fromisoformat(value[:10])


def watermark_date_for_timestamp(value: Optional[str]) -> Optional[date]:
    """UTC calendar date of a timestamp-grain cursor."""
    if not value:
        return None
    return parse_iso_timestamp(value).date()


def parse_iso_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (trailing Z allowed) into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_cursor_timestamp(value: Optional[str]) -> Optional[str]:
    """Canonical timestamp cursor "YYYY-MM-DDTHH:MM:SSZ", so string order is time order."""
    if not value:
        return None
    try:
        parsed = parse_iso_timestamp(value)
    except ValueError:
        return None
    return parsed.strftime("%Y-%m-%dT%H:%M:%SZ")


def day_start_iso(day: date) -> str:
    return f"{day.isoformat()}T00:00:00Z"
