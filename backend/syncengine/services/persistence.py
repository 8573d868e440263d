"""Shared persistence primitives for the warehouse pipeline.

WHAT:
    - run_in_transaction: one transaction per run with a statement timeout
    - dialect_insert / upsert: INSERT ... ON CONFLICT for PostgreSQL and SQLite
    - rebuild_daily_summary: cross-platform tenant rollup per date

WHY:
    Every stage of a run (raw upsert, fact replace, aggregate rebuild, summary
    rebuild, cursor write) must commit or roll back together, so a failed run
    never leaves a watermark that points past data that was not written.

REFERENCES:
    - syncengine/services/shopify_persistence.py
    - syncengine/services/meta_persistence.py
    - syncengine/services/cursors.py
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import delete, func, insert, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from syncengine.errors import PersistenceError
from syncengine.models import DailyMetaMetrics, DailyShopifyMetrics, DailySummary

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PersistOutcome:
    """What one persistence call wrote."""

    persisted_rows: int = 0
    fact_rows: int = 0
    dates_affected: List[date] = field(default_factory=list)

    @property
    def date_strings(self) -> List[str]:
        return [d.isoformat() for d in self.dates_affected]


# =============================================================================
# TRANSACTIONS
# =============================================================================

def run_in_transaction(
    db: Session,
    work: Callable[[Session], T],
    *,
    statement_timeout_ms: Optional[int] = None,
) -> T:
    """Run `work(db)` and commit, rolling back on any failure.

    Raises:
        PersistenceError: When a database error occurs (original exception chained)
    """
    try:
        if statement_timeout_ms and dialect_name(db) == "postgresql":
            db.execute(text(f"SET LOCAL statement_timeout = {int(statement_timeout_ms)}"))
        result = work(db)
        db.commit()
        return result
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[PERSIST] Transaction rolled back: %s", exc)
        raise PersistenceError(f"Database write failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise


# =============================================================================
# UPSERT
# =============================================================================

def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def dialect_insert(db: Session, table):
    """INSERT construct supporting ON CONFLICT for the session's dialect."""
    name = dialect_name(db)
    if name == "postgresql":
        return pg_insert(table)
    if name == "sqlite":
        return sqlite_insert(table)
    raise PersistenceError(f"Upsert is not supported on dialect {name}")


def upsert(
    db: Session,
    table,
    rows: List[Dict[str, Any]],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> int:
    """Insert rows, overwriting `update_columns` on conflict (last write wins).

    Returns:
        Number of rows sent
    """
    if not rows:
        return 0

    stmt = dialect_insert(db, table)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    db.execute(stmt, rows)
    return len(rows)


# =============================================================================
# TENANT DAILY SUMMARY
# =============================================================================

def _ratio(numerator: Decimal, denominator: Decimal) -> Optional[Decimal]:
    if not denominator:
        return None
    return (Decimal(numerator) / Decimal(denominator)).quantize(Decimal("0.0001"))


def rebuild_daily_summary(db: Session, workspace_id: UUID, dates: Iterable[date]) -> int:
    """Recompute daily_summary rows for a workspace and dates.

    Sums every shop's and every ad account's daily aggregates for the
    workspace, so a run for one platform keeps the other platform's
    contribution. Dates without any aggregate end up with no summary row.

    Returns:
        Number of summary rows written
    """
    dates = sorted(set(dates))
    if not dates:
        return 0

    shopify_rows = db.execute(
        select(
            DailyShopifyMetrics.date,
            func.sum(DailyShopifyMetrics.orders).label("orders"),
            func.sum(DailyShopifyMetrics.revenue_gross).label("revenue_gross"),
            func.sum(DailyShopifyMetrics.revenue_net).label("revenue_net"),
        )
        .where(DailyShopifyMetrics.workspace_id == workspace_id, DailyShopifyMetrics.date.in_(dates))
        .group_by(DailyShopifyMetrics.date)
    ).all()

    meta_rows = db.execute(
        select(
            DailyMetaMetrics.date,
            func.sum(DailyMetaMetrics.spend).label("spend"),
            func.sum(DailyMetaMetrics.purchases).label("purchases"),
            func.sum(DailyMetaMetrics.purchase_value).label("purchase_value"),
        )
        .where(DailyMetaMetrics.workspace_id == workspace_id, DailyMetaMetrics.date.in_(dates))
        .group_by(DailyMetaMetrics.date)
    ).all()

    by_date: Dict[date, Dict[str, Any]] = {}
    for row in shopify_rows:
        summary = by_date.setdefault(row.date, {})
        summary["orders"] = int(row.orders or 0)
        summary["revenue_gross"] = row.revenue_gross or Decimal("0")
        summary["revenue_net"] = row.revenue_net or Decimal("0")
    for row in meta_rows:
        summary = by_date.setdefault(row.date, {})
        summary["meta_spend"] = row.spend or Decimal("0")
        summary["meta_purchases"] = int(row.purchases or 0)
        summary["meta_purchase_value"] = row.purchase_value or Decimal("0")

    db.execute(
        delete(DailySummary).where(DailySummary.workspace_id == workspace_id, DailySummary.date.in_(dates))
    )

    summaries = []
    for day, values in sorted(by_date.items()):
        revenue_net = values.get("revenue_net", Decimal("0"))
        meta_spend = values.get("meta_spend", Decimal("0"))
        summaries.append({
            "workspace_id": workspace_id,
            "date": day,
            "orders": values.get("orders", 0),
            "revenue_gross": values.get("revenue_gross", Decimal("0")),
            "revenue_net": revenue_net,
            "meta_spend": meta_spend,
            "meta_purchases": values.get("meta_purchases", 0),
            "meta_purchase_value": values.get("meta_purchase_value", Decimal("0")),
            "blended_roas": _ratio(revenue_net, meta_spend),
        })

    if summaries:
        db.execute(insert(DailySummary), summaries)

    logger.info("[PERSIST] Rebuilt %d daily_summary rows for workspace %s", len(summaries), workspace_id)
    return len(summaries)
