"""Meta insight persistence: raw mirror -> facts -> daily aggregates -> summary.

WHAT:
    `persist_meta_insights(db, ctx, rows)` writes a batch of normalized ad-level
    insight rows. Like the Shopify pipeline it never commits itself.

WHY:
    Each fetched date is a complete ad-level snapshot for that day, so fact
    rows for the affected dates are replaced with exactly this batch.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from syncengine.models import DailyMetaMetrics, FactMetaDaily, MetaInsightRaw
from syncengine.services.context_resolver import MetaIntegrationContext
from syncengine.services.meta_normalizer import NormalizedMetaInsight
from syncengine.services.persistence import PersistOutcome, rebuild_daily_summary, upsert

logger = logging.getLogger(__name__)

INSIGHT_LEVEL = "ad"


def persist_meta_insights(
    db: Session,
    ctx: MetaIntegrationContext,
    rows: Sequence[NormalizedMetaInsight],
) -> PersistOutcome:
    """Write a batch of insight rows through every warehouse stage."""
    if not rows:
        return PersistOutcome()

    # One row per (ad, date); later rows win, matching the raw upsert
    unique = {(row.ad_id, row.date): row for row in rows}
    rows = list(unique.values())
    dates = sorted({row.date for row in rows})

    persisted = _upsert_raw(db, ctx, rows)
    fact_rows = _replace_facts(db, ctx, rows, dates)
    _rebuild_daily_metrics(db, ctx, dates)
    rebuild_daily_summary(db, ctx.workspace_id, dates)

    logger.info(
        "[PERSIST] Meta %s: %d raw rows, %d fact rows over %d dates",
        ctx.platform_ad_account_id, persisted, fact_rows, len(dates),
    )
    return PersistOutcome(persisted_rows=persisted, fact_rows=fact_rows, dates_affected=dates)


def _upsert_raw(db: Session, ctx: MetaIntegrationContext, rows: List[NormalizedMetaInsight]) -> int:
    now = datetime.utcnow()
    values = [
        {
            "integration_id": ctx.integration_id,
            "platform_ad_account_id": ctx.platform_ad_account_id,
            "ad_id": row.ad_id,
            "date": row.date,
            "level": INSIGHT_LEVEL,
            "ad_effective_status": row.effective_status,
            "is_synthetic": row.is_synthetic,
            "payload": row.raw,
            "last_synced_at": now,
        }
        for row in rows
    ]
    return upsert(
        db,
        MetaInsightRaw.__table__,
        values,
        conflict_columns=["integration_id", "ad_id", "date", "level"],
        update_columns=["platform_ad_account_id", "ad_effective_status", "is_synthetic", "payload", "last_synced_at"],
    )


def _replace_facts(
    db: Session,
    ctx: MetaIntegrationContext,
    rows: List[NormalizedMetaInsight],
    dates: List[date],
) -> int:
    db.execute(
        delete(FactMetaDaily).where(
            FactMetaDaily.integration_id == ctx.integration_id,
            FactMetaDaily.ad_account_id == ctx.ad_account_id,
            FactMetaDaily.date.in_(dates),
        )
    )
    values = [
        {
            "integration_id": ctx.integration_id,
            "ad_account_id": ctx.ad_account_id,
            "workspace_id": ctx.workspace_id,
            "date": row.date,
            "campaign_id": row.campaign_id,
            "adset_id": row.adset_id,
            "ad_id": row.ad_id,
            "spend": row.spend,
            "impressions": row.impressions,
            "clicks": row.clicks,
            "purchases": row.purchases,
            "purchase_value": row.purchase_value,
            "is_synthetic": row.is_synthetic,
        }
        for row in rows
    ]
    db.execute(insert(FactMetaDaily), values)
    return len(values)


def _rebuild_daily_metrics(db: Session, ctx: MetaIntegrationContext, dates: List[date]) -> None:
    """Replace daily_meta_metrics for (ad account, dates); roas is NULL without spend."""
    fact = FactMetaDaily
    grouped = db.execute(
        select(
            fact.date,
            func.sum(fact.spend).label("spend"),
            func.sum(fact.impressions).label("impressions"),
            func.sum(fact.clicks).label("clicks"),
            func.sum(fact.purchases).label("purchases"),
            func.sum(fact.purchase_value).label("purchase_value"),
        )
        .where(fact.ad_account_id == ctx.ad_account_id, fact.date.in_(dates))
        .group_by(fact.date)
    ).all()

    db.execute(
        delete(DailyMetaMetrics).where(
            DailyMetaMetrics.ad_account_id == ctx.ad_account_id,
            DailyMetaMetrics.date.in_(dates),
        )
    )

    values = []
    for row in grouped:
        spend = row.spend or Decimal("0")
        purchase_value = row.purchase_value or Decimal("0")
        values.append({
            "ad_account_id": ctx.ad_account_id,
            "workspace_id": ctx.workspace_id,
            "date": row.date,
            "spend": spend,
            "impressions": int(row.impressions or 0),
            "clicks": int(row.clicks or 0),
            "purchases": int(row.purchases or 0),
            "purchase_value": purchase_value,
            "roas": (Decimal(purchase_value) / Decimal(spend)).quantize(Decimal("0.0001")) if spend else None,
        })
    if values:
        db.execute(insert(DailyMetaMetrics), values)
