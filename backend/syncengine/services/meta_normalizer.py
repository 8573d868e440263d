"""Normalize Meta ad-level insight rows.

WHAT:
    - normalize_insight: one Graph API insights row -> NormalizedMetaInsight
    - build_stub_insights: deterministic synthetic rows for stub mode
    - normalize_ad_account_id: ensure the "act_" prefix

WHY:
    Purchases are reported as a list of action types; only purchase-like
    actions count toward purchases and purchase value.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights/parameters
"""

import hashlib
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

PURCHASE_ACTION_TYPES = frozenset({
    "offsite_conversion.fb_pixel_purchase",
    "onsite_conversion.purchase",
    "purchase",
    "subscribe_and_save_purchase",
})


@dataclass
class NormalizedMetaInsight:
    date: date
    ad_id: str
    adset_id: Optional[str]
    campaign_id: Optional[str]
    spend: Decimal
    impressions: int
    clicks: int
    purchases: int
    purchase_value: Decimal
    effective_status: Optional[str]
    is_synthetic: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


def _decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def _sum_purchase_actions(actions: Any) -> Decimal:
    total = Decimal("0")
    if not isinstance(actions, list):
        return total
    for action in actions:
        if isinstance(action, dict) and action.get("action_type") in PURCHASE_ACTION_TYPES:
            total += _decimal(action.get("value"))
    return total


def normalize_insight(row: Dict[str, Any], fallback_date: date) -> Optional[NormalizedMetaInsight]:
    """Normalize one insights row; rows without an ad_id are skipped (None)."""
    ad_id = row.get("ad_id")
    if not ad_id:
        return None

    raw_date = row.get("date_start") or row.get("date_stop")
    row_date = date.fromisoformat(raw_date) if raw_date else fallback_date

    return NormalizedMetaInsight(
        date=row_date,
        ad_id=str(ad_id),
        adset_id=row.get("adset_id"),
        campaign_id=row.get("campaign_id"),
        spend=_decimal(row.get("spend")),
        impressions=int(_decimal(row.get("impressions"))),
        clicks=int(_decimal(row.get("clicks"))),
        purchases=int(_sum_purchase_actions(row.get("actions")).to_integral_value()),
        purchase_value=_sum_purchase_actions(row.get("action_values")),
        effective_status=row.get("ad_effective_status"),
        raw=row,
    )


def normalize_ad_account_id(value: str) -> str:
    """Prefix a bare ad account id with act_; prefixed ids pass through."""
    if not value or value.startswith("act_"):
        return value
    return f"act_{value}"


def _seed(text: str) -> int:
    return int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)


def build_stub_insights(integration_id: str, day: date) -> List[NormalizedMetaInsight]:
    """One or two synthetic ad rows for a date, stable for (integration, date)."""
    seed = _seed(f"{integration_id}:{day.isoformat()}")
    rows = []
    for index in range((seed % 2) + 1):
        row_seed = _seed(f"{seed}:{index}")
        spend = Decimal(row_seed % 5000) / Decimal(100) + Decimal(12)
        purchases = max(0, (row_seed % 4) - 1)
        purchase_value = (spend * Decimal("1.8") * purchases).quantize(Decimal("0.0001"))
        impressions = 800 + row_seed % 600
        clicks = 40 + row_seed % 35
        status = "ACTIVE" if index % 2 == 0 else "PAUSED"
        ad_id = f"stub_ad_{index}_{day.isoformat()}"
        raw = {
            "ad_id": ad_id,
            "adset_id": f"stub_adset_{index}",
            "campaign_id": f"stub_campaign_{index}",
            "date_start": day.isoformat(),
            "date_stop": day.isoformat(),
            "spend": str(spend),
            "impressions": str(impressions),
            "clicks": str(clicks),
            "actions": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": str(purchases)}],
            "action_values": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": str(purchase_value)}],
            "ad_effective_status": status,
        }
        rows.append(
            NormalizedMetaInsight(
                date=day,
                ad_id=ad_id,
                adset_id=raw["adset_id"],
                campaign_id=raw["campaign_id"],
                spend=spend,
                impressions=impressions,
                clicks=clicks,
                purchases=purchases,
                purchase_value=purchase_value,
                effective_status=status,
                is_synthetic=True,
                raw=raw,
            )
        )
    return rows
