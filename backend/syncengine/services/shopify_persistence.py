"""Shopify order persistence: raw mirror -> facts -> customers -> daily aggregates -> summary.

WHAT:
    `persist_shopify_orders(db, ctx, orders)` runs every write stage for a batch
    of normalized orders. It does not commit; callers wrap it (and the
    cursor write) in `run_in_transaction`.

WHY:
    Fresh runs fetch by `updated_at`, so a batch rarely holds every order of a
    date. Facts for each affected date are therefore re-derived from the raw
    mirror (all orders ever mirrored for that date), which after stage 1 also
    includes this batch. Facts and aggregates are always replaced wholesale
    for the affected dates, never merged. The customer dimension is the one
    upserted table below the raw mirror: identity from the newest order in
    the batch, order history recomputed from facts.

REFERENCES:
    - syncengine/services/shopify_normalizer.py
    - syncengine/services/persistence.py
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import case, delete, extract, func, insert, select, update
from sqlalchemy.orm import Session

from syncengine.models import (
    DailyShopifyMetrics,
    DailyShopifyProductMetrics,
    DailyShopifySalesByChannel,
    DailyShopifySalesByLocation,
    DimShopifyCustomer,
    FactShopifyOrder,
    FactShopifyOrderLine,
    HourlyShopifySales,
    ShopifyOrderRaw,
)
from syncengine.services.context_resolver import ShopifyIntegrationContext
from syncengine.services.persistence import PersistOutcome, dialect_insert, rebuild_daily_summary, upsert
from syncengine.services.shopify_normalizer import DEFAULT_SALES_CHANNEL, NormalizedShopifyOrder, normalize_order
from syncengine.services.windowing import parse_iso_timestamp

logger = logging.getLogger(__name__)

ORDER_GRAIN = "order"
UNKNOWN_PRODUCT = "unknown"
UNKNOWN_COUNTRY = "Unknown"


def persist_shopify_orders(
    db: Session,
    ctx: ShopifyIntegrationContext,
    orders: Sequence[NormalizedShopifyOrder],
) -> PersistOutcome:
    """Write a batch of orders through every warehouse stage."""
    if not orders:
        return PersistOutcome()

    dates = sorted({order.order_date for order in orders})

    persisted = _upsert_raw_orders(db, ctx, orders)
    fact_rows = _replace_facts(db, ctx, dates)
    customers = _upsert_customers(db, ctx, orders)
    _rebuild_daily_metrics(db, ctx, dates)
    _rebuild_product_metrics(db, ctx, dates)
    _rebuild_sales_by_channel(db, ctx, dates)
    _rebuild_sales_by_location(db, ctx, dates)
    _rebuild_hourly_sales(db, ctx, dates)
    rebuild_daily_summary(db, ctx.workspace_id, dates)

    logger.info(
        "[PERSIST] Shopify %s: %d raw orders, %d fact rows, %d customers over %d dates",
        ctx.shop_domain, persisted, fact_rows, customers, len(dates),
    )
    return PersistOutcome(persisted_rows=persisted, fact_rows=fact_rows, dates_affected=dates)


# =============================================================================
# STAGE 1: RAW MIRROR
# =============================================================================

def _upsert_raw_orders(db: Session, ctx: ShopifyIntegrationContext, orders: Sequence[NormalizedShopifyOrder]) -> int:
    now = datetime.utcnow()
    rows = [
        {
            "integration_id": ctx.integration_id,
            "shopify_order_id": order.shopify_order_id,
            "grain": ORDER_GRAIN,
            "order_date": order.order_date,
            "order_updated_at": order.order_updated_at,
            "payload": order.raw,
            "last_synced_at": now,
        }
        for order in orders
    ]
    return upsert(
        db,
        ShopifyOrderRaw.__table__,
        rows,
        conflict_columns=["integration_id", "shopify_order_id", "grain"],
        update_columns=["order_date", "order_updated_at", "payload", "last_synced_at"],
    )


# =============================================================================
# STAGE 2: FACTS
# =============================================================================

def _utc_naive(value: Optional[str]) -> Optional[datetime]:
    # Stored like every other timestamp column: naive UTC
    if not value:
        return None
    return parse_iso_timestamp(value).replace(tzinfo=None)


def _mirrored_orders(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> List[NormalizedShopifyOrder]:
    payloads = db.execute(
        select(ShopifyOrderRaw.payload).where(
            ShopifyOrderRaw.integration_id == ctx.integration_id,
            ShopifyOrderRaw.grain == ORDER_GRAIN,
            ShopifyOrderRaw.order_date.in_(dates),
        )
    ).scalars()
    return [normalize_order(payload) for payload in payloads]


def _replace_facts(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> int:
    db.execute(
        delete(FactShopifyOrderLine).where(
            FactShopifyOrderLine.integration_id == ctx.integration_id,
            FactShopifyOrderLine.order_date.in_(dates),
        )
    )
    db.execute(
        delete(FactShopifyOrder).where(
            FactShopifyOrder.integration_id == ctx.integration_id,
            FactShopifyOrder.order_date.in_(dates),
        )
    )

    scope = {"integration_id": ctx.integration_id, "shop_id": ctx.shop_id, "workspace_id": ctx.workspace_id}
    order_rows = []
    line_rows = []
    for order in _mirrored_orders(db, ctx, dates):
        order_rows.append({
            **scope,
            "order_date": order.order_date,
            "order_created_at": _utc_naive(order.order_created_at),
            "shopify_order_id": order.shopify_order_id,
            "order_name": order.order_name,
            "order_status": order.order_status,
            "financial_status": order.financial_status,
            "fulfillment_status": order.fulfillment_status,
            "cancelled_at": _utc_naive(order.cancelled_at),
            "total_gross": order.total_gross,
            "total_net": order.total_net,
            "refund_total": order.refund_total,
            "subtotal": order.subtotal,
            "total_discounts": order.total_discounts,
            "total_shipping": order.total_shipping,
            "total_tax": order.total_tax,
            "currency": order.currency or ctx.currency,
            "shopify_customer_id": order.shopify_customer_id,
            "is_first_order": order.is_first_order,
            "sales_channel": order.sales_channel,
            "source_name": order.source_name,
            "shipping_country": order.shipping_country,
            "shipping_region": order.shipping_region,
        })
        for item in order.line_items:
            line_rows.append({
                **scope,
                "order_date": order.order_date,
                "shopify_order_id": order.shopify_order_id,
                "shopify_product_id": item.shopify_product_id,
                "shopify_variant_id": item.shopify_variant_id,
                "product_title": item.product_title,
                "variant_title": item.variant_title,
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "line_total": item.line_total,
            })

    if order_rows:
        db.execute(insert(FactShopifyOrder), order_rows)
    if line_rows:
        db.execute(insert(FactShopifyOrderLine), line_rows)
    return len(order_rows)


# =============================================================================
# STAGE 3: CUSTOMERS
# =============================================================================

def _latest_order_per_customer(orders: Sequence[NormalizedShopifyOrder]) -> List[NormalizedShopifyOrder]:
    latest: Dict[str, NormalizedShopifyOrder] = {}
    for order in orders:
        if not order.shopify_customer_id:
            continue
        current = latest.get(order.shopify_customer_id)
        if current is None or (
            parse_iso_timestamp(order.order_created_at) > parse_iso_timestamp(current.order_created_at)
        ):
            latest[order.shopify_customer_id] = order
    return list(latest.values())


def _upsert_customers(db: Session, ctx: ShopifyIntegrationContext, orders: Sequence[NormalizedShopifyOrder]) -> int:
    """Upsert dim_shopify_customers for the batch's customers, then refresh their history.

    Identity fields keep the stored value when the newer order omits them;
    total_orders never decreases.
    """
    customers = _latest_order_per_customer(orders)
    if not customers:
        return 0

    now = datetime.utcnow()
    rows = [
        {
            "shop_id": ctx.shop_id,
            "workspace_id": ctx.workspace_id,
            "shopify_customer_id": order.shopify_customer_id,
            "email": order.customer_email,
            "first_name": order.customer_first_name,
            "last_name": order.customer_last_name,
            "total_orders": order.customer_orders_count,
            "tags": order.customer_tags,
            "country": order.shipping_country,
            "region": order.shipping_region,
            "updated_at": now,
        }
        for order in customers
    ]

    table = DimShopifyCustomer.__table__
    stmt = dialect_insert(db, table)
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=["shop_id", "shopify_customer_id"],
        set_={
            "email": func.coalesce(excluded.email, table.c.email),
            "first_name": func.coalesce(excluded.first_name, table.c.first_name),
            "last_name": func.coalesce(excluded.last_name, table.c.last_name),
            "total_orders": case(
                (excluded.total_orders > table.c.total_orders, excluded.total_orders),
                else_=table.c.total_orders,
            ),
            "tags": excluded.tags,
            "country": func.coalesce(excluded.country, table.c.country),
            "region": func.coalesce(excluded.region, table.c.region),
            "updated_at": excluded.updated_at,
        },
    )
    db.execute(stmt, rows)

    _refresh_customer_history(db, ctx, [order.shopify_customer_id for order in customers])
    return len(rows)


def _refresh_customer_history(db: Session, ctx: ShopifyIntegrationContext, customer_ids: List[str]) -> None:
    fact = FactShopifyOrder
    history = db.execute(
        select(
            fact.shopify_customer_id,
            func.min(fact.order_date).label("first_order_date"),
            func.max(fact.order_date).label("last_order_date"),
            func.count(fact.id).label("orders"),
            func.sum(fact.total_net).label("total_spent"),
        )
        .where(fact.shop_id == ctx.shop_id, fact.shopify_customer_id.in_(customer_ids))
        .group_by(fact.shopify_customer_id)
    ).all()

    for row in history:
        orders = int(row.orders or 0)
        total_spent = Decimal(row.total_spent or 0)
        db.execute(
            update(DimShopifyCustomer)
            .where(
                DimShopifyCustomer.shop_id == ctx.shop_id,
                DimShopifyCustomer.shopify_customer_id == row.shopify_customer_id,
            )
            .values(
                first_order_date=row.first_order_date,
                last_order_date=row.last_order_date,
                total_spent=total_spent,
                average_order_value=(total_spent / orders).quantize(Decimal("0.0001")) if orders else None,
            )
        )


# =============================================================================
# STAGE 4: DAILY AGGREGATES
# =============================================================================

def _rebuild_daily_metrics(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> None:
    """Replace daily_shopify_metrics for (shop, dates) from the shop's fact rows."""
    fact = FactShopifyOrder
    grouped = db.execute(
        select(
            fact.order_date,
            func.count(fact.id).label("orders"),
            func.sum(fact.total_gross).label("revenue_gross"),
            func.sum(fact.total_net).label("revenue_net"),
            func.sum(fact.refund_total).label("refunds"),
            func.sum(fact.total_discounts).label("total_discounts"),
            func.sum(fact.total_shipping).label("total_shipping"),
            func.sum(fact.total_tax).label("total_tax"),
            func.sum(case((fact.is_first_order.is_(True), 1), else_=0)).label("new_customers"),
            func.sum(case((fact.is_first_order.is_(False), 1), else_=0)).label("returning_customers"),
        )
        .where(fact.shop_id == ctx.shop_id, fact.order_date.in_(dates))
        .group_by(fact.order_date)
    ).all()

    db.execute(
        delete(DailyShopifyMetrics).where(
            DailyShopifyMetrics.shop_id == ctx.shop_id,
            DailyShopifyMetrics.date.in_(dates),
        )
    )

    rows = []
    for row in grouped:
        orders = int(row.orders or 0)
        revenue_net = row.revenue_net or Decimal("0")
        new_customers = int(row.new_customers or 0)
        returning = int(row.returning_customers or 0)
        customers = new_customers + returning
        rows.append({
            "shop_id": ctx.shop_id,
            "workspace_id": ctx.workspace_id,
            "date": row.order_date,
            "orders": orders,
            "revenue_gross": row.revenue_gross or Decimal("0"),
            "revenue_net": revenue_net,
            "refunds": row.refunds or Decimal("0"),
            "aov": (Decimal(revenue_net) / orders).quantize(Decimal("0.0001")) if orders else None,
            "total_discounts": row.total_discounts or Decimal("0"),
            "total_shipping": row.total_shipping or Decimal("0"),
            "total_tax": row.total_tax or Decimal("0"),
            "new_customers": new_customers,
            "returning_customers": returning,
            "returning_customer_rate": (
                (Decimal(returning) / customers).quantize(Decimal("0.000001")) if customers else None
            ),
        })

    if rows:
        db.execute(insert(DailyShopifyMetrics), rows)


def _rebuild_sales_by_channel(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> None:
    fact = FactShopifyOrder
    channel = func.coalesce(fact.sales_channel, DEFAULT_SALES_CHANNEL)
    grouped = db.execute(
        select(
            fact.order_date,
            channel.label("sales_channel"),
            func.count(fact.id).label("orders"),
            func.sum(fact.total_net).label("revenue_net"),
        )
        .where(fact.shop_id == ctx.shop_id, fact.order_date.in_(dates))
        .group_by(fact.order_date, channel)
    ).all()

    db.execute(
        delete(DailyShopifySalesByChannel).where(
            DailyShopifySalesByChannel.shop_id == ctx.shop_id,
            DailyShopifySalesByChannel.date.in_(dates),
        )
    )

    rows: List[Dict] = [
        {
            "shop_id": ctx.shop_id,
            "workspace_id": ctx.workspace_id,
            "date": row.order_date,
            "sales_channel": row.sales_channel,
            "orders": int(row.orders or 0),
            "revenue_net": row.revenue_net or Decimal("0"),
        }
        for row in grouped
    ]
    if rows:
        db.execute(insert(DailyShopifySalesByChannel), rows)


def _rebuild_product_metrics(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> None:
    """Replace daily_shopify_product_metrics for (shop, dates) from order lines."""
    line = FactShopifyOrderLine
    product = func.coalesce(line.shopify_product_id, UNKNOWN_PRODUCT)
    variant = func.coalesce(line.shopify_variant_id, UNKNOWN_PRODUCT)
    grouped = db.execute(
        select(
            line.order_date,
            product.label("shopify_product_id"),
            variant.label("shopify_variant_id"),
            func.max(line.product_title).label("product_title"),
            func.max(line.variant_title).label("variant_title"),
            func.sum(line.quantity).label("quantity_sold"),
            func.sum(line.line_total).label("revenue"),
            func.count(func.distinct(line.shopify_order_id)).label("orders_count"),
        )
        .where(line.shop_id == ctx.shop_id, line.order_date.in_(dates))
        .group_by(line.order_date, product, variant)
    ).all()

    db.execute(
        delete(DailyShopifyProductMetrics).where(
            DailyShopifyProductMetrics.shop_id == ctx.shop_id,
            DailyShopifyProductMetrics.date.in_(dates),
        )
    )

    rows = [
        {
            "shop_id": ctx.shop_id,
            "workspace_id": ctx.workspace_id,
            "date": row.order_date,
            "shopify_product_id": row.shopify_product_id,
            "shopify_variant_id": row.shopify_variant_id,
            "product_title": row.product_title,
            "variant_title": row.variant_title,
            "quantity_sold": int(row.quantity_sold or 0),
            "revenue": row.revenue or Decimal("0"),
            "orders_count": int(row.orders_count or 0),
        }
        for row in grouped
    ]
    if rows:
        db.execute(insert(DailyShopifyProductMetrics), rows)


def _rebuild_sales_by_location(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> None:
    fact = FactShopifyOrder
    country = func.coalesce(fact.shipping_country, UNKNOWN_COUNTRY)
    grouped = db.execute(
        select(
            fact.order_date,
            country.label("country"),
            fact.shipping_region,
            func.count(fact.id).label("orders"),
            func.sum(fact.total_net).label("revenue_net"),
            func.sum(case((fact.is_first_order.is_(True), 1), else_=0)).label("new_customers"),
        )
        .where(fact.shop_id == ctx.shop_id, fact.order_date.in_(dates))
        .group_by(fact.order_date, country, fact.shipping_region)
    ).all()

    db.execute(
        delete(DailyShopifySalesByLocation).where(
            DailyShopifySalesByLocation.shop_id == ctx.shop_id,
            DailyShopifySalesByLocation.date.in_(dates),
        )
    )

    rows = [
        {
            "shop_id": ctx.shop_id,
            "workspace_id": ctx.workspace_id,
            "date": row.order_date,
            "country": row.country,
            "region": row.shipping_region,
            "orders": int(row.orders or 0),
            "revenue_net": row.revenue_net or Decimal("0"),
            "new_customers": int(row.new_customers or 0),
        }
        for row in grouped
    ]
    if rows:
        db.execute(insert(DailyShopifySalesByLocation), rows)


def _rebuild_hourly_sales(db: Session, ctx: ShopifyIntegrationContext, dates: List[date]) -> None:
    """Replace hourly_shopify_sales for (shop, dates), bucketed by UTC creation hour."""
    fact = FactShopifyOrder
    hour = extract("hour", fact.order_created_at)
    grouped = db.execute(
        select(
            fact.order_date,
            hour.label("hour"),
            func.count(fact.id).label("orders"),
            func.sum(fact.total_net).label("revenue_net"),
        )
        .where(fact.shop_id == ctx.shop_id, fact.order_date.in_(dates))
        .group_by(fact.order_date, hour)
    ).all()

    db.execute(
        delete(HourlyShopifySales).where(
            HourlyShopifySales.shop_id == ctx.shop_id,
            HourlyShopifySales.date.in_(dates),
        )
    )

    rows = [
        {
            "shop_id": ctx.shop_id,
            "workspace_id": ctx.workspace_id,
            "date": row.order_date,
            "hour": int(row.hour),
            "orders": int(row.orders or 0),
            "revenue_net": row.revenue_net or Decimal("0"),
        }
        for row in grouped
    ]
    if rows:
        db.execute(insert(HourlyShopifySales), rows)
