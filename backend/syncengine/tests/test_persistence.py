"""Tests for the warehouse persistence pipeline.

WHAT:
    Raw upsert, fact replace, aggregate rebuild and summary rebuild for both
    platforms, plus transaction rollback behaviour.

WHY:
    Re-running a window must converge to the same rows, aggregates must equal
    their facts, and one platform's run must not erase the other's summary.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from syncengine.errors import PersistenceError
from syncengine.models import (
    DailyMetaMetrics,
    DailyShopifyMetrics,
    DailyShopifyProductMetrics,
    DailyShopifySalesByChannel,
    DailyShopifySalesByLocation,
    DailySummary,
    DimShopifyCustomer,
    FactMetaDaily,
    FactShopifyOrder,
    FactShopifyOrderLine,
    HourlyShopifySales,
    MetaInsightRaw,
    ShopifyOrderRaw,
    SyncCursor,
)
from syncengine.services.context_resolver import load_meta_context, load_shopify_context
from syncengine.services.cursors import CursorStore
from syncengine.services.meta_normalizer import normalize_insight
from syncengine.services.meta_persistence import persist_meta_insights
from syncengine.services.persistence import run_in_transaction
from syncengine.services.shopify_normalizer import normalize_order
from syncengine.services.shopify_persistence import persist_shopify_orders

JAN_1 = date(2024, 1, 1)
JAN_2 = date(2024, 1, 2)


@pytest.fixture
def shopify_ctx(db_session, make_shopify_integration):
    return load_shopify_context(db_session, str(make_shopify_integration().id))


@pytest.fixture
def meta_ctx(db_session, make_meta_integration):
    return load_meta_context(db_session, str(make_meta_integration().id))


def _persist(db_session, fn, ctx, rows):
    return run_in_transaction(db_session, lambda session: fn(session, ctx, rows))


class TestShopifyPersistence:
    def test_writes_every_layer(self, db_session, shopify_ctx, order_node):
        orders = [
            normalize_order(order_node(1, "2024-01-01T09:00:00Z", total="100.00", customer_orders=1)),
            normalize_order(order_node(2, "2024-01-01T15:00:00Z", total="50.00", refunded="10.00", customer_orders=3)),
            normalize_order(order_node(3, "2024-01-02T08:00:00Z", total="20.00", channel="Point of Sale")),
        ]

        outcome = _persist(db_session, persist_shopify_orders, shopify_ctx, orders)

        assert outcome.persisted_rows == 3
        assert outcome.fact_rows == 3
        assert outcome.date_strings == ["2024-01-01", "2024-01-02"]
        assert db_session.query(ShopifyOrderRaw).count() == 3
        assert db_session.query(FactShopifyOrder).count() == 3
        assert db_session.query(FactShopifyOrderLine).count() == 3

        day1 = db_session.query(DailyShopifyMetrics).filter_by(date=JAN_1).one()
        assert day1.orders == 2
        assert day1.revenue_gross == Decimal("150.00")
        assert day1.revenue_net == Decimal("140.00")
        assert day1.refunds == Decimal("10.00")
        assert day1.aov == Decimal("70.00")
        assert day1.new_customers == 1
        assert day1.returning_customers == 1

        channels = {
            (row.date, row.sales_channel): row.orders
            for row in db_session.query(DailyShopifySalesByChannel).all()
        }
        assert channels == {(JAN_1, "Online Store"): 2, (JAN_2, "Point of Sale"): 1}

        summary = db_session.query(DailySummary).filter_by(date=JAN_1).one()
        assert summary.orders == 2
        assert summary.revenue_net == Decimal("140.00")
        assert summary.blended_roas is None

    def test_rerun_is_idempotent(self, db_session, shopify_ctx, order_node):
        orders = [
            normalize_order(order_node(1, "2024-01-01T09:00:00Z")),
            normalize_order(order_node(2, "2024-01-02T09:00:00Z")),
        ]

        _persist(db_session, persist_shopify_orders, shopify_ctx, orders)
        _persist(db_session, persist_shopify_orders, shopify_ctx, orders)

        assert db_session.query(ShopifyOrderRaw).count() == 2
        assert db_session.query(FactShopifyOrder).count() == 2
        assert db_session.query(FactShopifyOrderLine).count() == 2
        assert db_session.query(DailyShopifyMetrics).count() == 2
        assert db_session.query(DailyShopifyProductMetrics).count() == 2
        assert db_session.query(DailyShopifySalesByLocation).count() == 2
        assert db_session.query(HourlyShopifySales).count() == 2
        assert db_session.query(DimShopifyCustomer).count() == 2
        assert db_session.query(DailySummary).count() == 2

    def test_partial_batch_keeps_other_orders_of_the_date(self, db_session, shopify_ctx, order_node):
        """WHAT: A later batch with one updated order must not drop its siblings.
        WHY: Fresh runs fetch by updated_at, so they see only changed orders.
        """
        first = normalize_order(order_node(1, "2024-01-01T09:00:00Z", total="100.00"))
        second = normalize_order(order_node(2, "2024-01-01T10:00:00Z", total="40.00"))
        _persist(db_session, persist_shopify_orders, shopify_ctx, [first, second])

        refunded = normalize_order(
            order_node(2, "2024-01-01T10:00:00Z", updated_at="2024-01-03T12:00:00Z", total="40.00", refunded="40.00")
        )
        _persist(db_session, persist_shopify_orders, shopify_ctx, [refunded])

        assert db_session.query(FactShopifyOrder).count() == 2
        day = db_session.query(DailyShopifyMetrics).filter_by(date=JAN_1).one()
        assert day.orders == 2
        assert day.revenue_net == Decimal("100.00")
        assert day.refunds == Decimal("40.00")

    def test_aggregates_match_fact_sums(self, db_session, shopify_ctx, order_node):
        orders = [
            normalize_order(order_node(n, f"2024-01-0{1 + n % 3}T12:00:00Z", total=f"{n * 7}.50"))
            for n in range(1, 10)
        ]
        _persist(db_session, persist_shopify_orders, shopify_ctx, orders)

        for aggregate in db_session.query(DailyShopifyMetrics).all():
            count, net = (
                db_session.query(func.count(FactShopifyOrder.id), func.sum(FactShopifyOrder.total_net))
                .filter(FactShopifyOrder.order_date == aggregate.date)
                .one()
            )
            assert aggregate.orders == count
            assert aggregate.revenue_net == Decimal(str(net)).quantize(Decimal("0.0001"))

    def test_empty_batch_writes_nothing(self, db_session, shopify_ctx):
        outcome = _persist(db_session, persist_shopify_orders, shopify_ctx, [])

        assert outcome.persisted_rows == 0
        assert outcome.dates_affected == []
        assert db_session.query(DailySummary).count() == 0

    def test_fact_timestamps_are_stored_as_utc_datetimes(self, db_session, shopify_ctx, order_node):
        node = order_node(1, "2024-01-01T10:30:00+02:00")
        node["cancelledAt"] = "2024-01-02T09:00:00Z"
        _persist(db_session, persist_shopify_orders, shopify_ctx, [normalize_order(node)])

        fact = db_session.query(FactShopifyOrder).one()
        assert fact.order_created_at == datetime(2024, 1, 1, 8, 30)
        assert fact.cancelled_at == datetime(2024, 1, 2, 9, 0)

        in_range = (
            db_session.query(FactShopifyOrder)
            .filter(
                FactShopifyOrder.order_created_at >= datetime(2024, 1, 1, 8, 0),
                FactShopifyOrder.order_created_at < datetime(2024, 1, 1, 9, 0),
            )
            .count()
        )
        assert in_range == 1


class TestShopifyBreakdowns:
    def test_product_metrics_match_order_lines(self, db_session, shopify_ctx, order_node):
        two_products = order_node(2, "2024-01-01T11:00:00Z")
        two_products["lineItems"]["edges"].append({
            "node": {
                "id": "gid://shopify/LineItem/22",
                "title": "Mug",
                "variantTitle": None,
                "sku": "MUG",
                "quantity": 3,
                "product": {"id": "gid://shopify/Product/2", "title": "Mug"},
                "variant": None,
                "originalUnitPriceSet": {"shopMoney": {"amount": "12.00", "currencyCode": "EUR"}},
                "discountedUnitPriceSet": None,
            }
        })
        orders = [
            normalize_order(order_node(1, "2024-01-01T09:00:00Z")),
            normalize_order(two_products),
            normalize_order(order_node(3, "2024-01-02T09:00:00Z")),
        ]
        _persist(db_session, persist_shopify_orders, shopify_ctx, orders)

        metrics = {
            (row.date, row.shopify_product_id, row.shopify_variant_id): row
            for row in db_session.query(DailyShopifyProductMetrics).all()
        }
        assert set(metrics) == {(JAN_1, "1", "11"), (JAN_1, "2", "unknown"), (JAN_2, "1", "11")}

        shirts = metrics[(JAN_1, "1", "11")]
        assert shirts.product_title == "T-Shirt"
        assert shirts.quantity_sold == 4
        assert shirts.revenue == Decimal("200.00")
        assert shirts.orders_count == 2

        mugs = metrics[(JAN_1, "2", "unknown")]
        assert mugs.quantity_sold == 3
        assert mugs.revenue == Decimal("36.00")
        assert mugs.orders_count == 1

        for day in (JAN_1, JAN_2):
            quantity, revenue = (
                db_session.query(func.sum(FactShopifyOrderLine.quantity), func.sum(FactShopifyOrderLine.line_total))
                .filter(FactShopifyOrderLine.order_date == day)
                .one()
            )
            rows = [row for key, row in metrics.items() if key[0] == day]
            assert sum(row.quantity_sold for row in rows) == quantity
            assert sum(row.revenue for row in rows) == Decimal(str(revenue)).quantize(Decimal("0.0001"))

    def test_sales_by_location_falls_back_to_unknown_country(self, db_session, shopify_ctx, order_node):
        no_address = order_node(2, "2024-01-01T10:00:00Z", total="30.00", customer_orders=4)
        no_address["shippingAddress"] = None
        orders = [
            normalize_order(order_node(1, "2024-01-01T09:00:00Z", total="100.00")),
            normalize_order(no_address),
        ]
        _persist(db_session, persist_shopify_orders, shopify_ctx, orders)

        locations = {
            (row.country, row.region): (row.orders, row.revenue_net, row.new_customers)
            for row in db_session.query(DailyShopifySalesByLocation).filter_by(date=JAN_1).all()
        }
        assert locations == {
            ("Netherlands", "Noord-Holland"): (1, Decimal("100.00"), 1),
            ("Unknown", None): (1, Decimal("30.00"), 0),
        }

    def test_hourly_sales_bucket_by_utc_creation_hour(self, db_session, shopify_ctx, order_node):
        orders = [
            normalize_order(order_node(1, "2024-01-01T10:30:00+02:00", total="10.00")),
            normalize_order(order_node(2, "2024-01-01T08:59:00Z", total="20.00")),
            normalize_order(order_node(3, "2024-01-01T23:15:00Z", total="5.00")),
        ]
        _persist(db_session, persist_shopify_orders, shopify_ctx, orders)
        _persist(db_session, persist_shopify_orders, shopify_ctx, orders[:1])

        hours = {
            row.hour: (row.orders, row.revenue_net)
            for row in db_session.query(HourlyShopifySales).filter_by(date=JAN_1).all()
        }
        assert hours == {8: (2, Decimal("30.00")), 23: (1, Decimal("5.00"))}

    def test_customers_keep_identity_and_recompute_history(self, db_session, shopify_ctx, order_node):
        """WHAT: A returning customer's dimension row merges identity and
                 recomputes spend from facts across batches.
        WHY: A newer order may omit fields, and a replayed older order must not
             lower the lifetime order count Shopify reported.
        """
        first = order_node(1, "2024-01-01T09:00:00Z", total="100.00", customer_orders=1)
        second = order_node(2, "2024-01-02T09:00:00Z", total="50.00", customer_orders=2)
        second["customer"]["id"] = "gid://shopify/Customer/1"
        second["customer"]["email"] = None

        _persist(db_session, persist_shopify_orders, shopify_ctx, [normalize_order(first)])
        _persist(db_session, persist_shopify_orders, shopify_ctx, [normalize_order(second)])

        customer = db_session.query(DimShopifyCustomer).one()
        assert customer.shopify_customer_id == "1"
        assert customer.email == "customer1@example.com"
        assert customer.last_name == "Customer 2"
        assert customer.tags == ["newsletter"]
        assert customer.country == "Netherlands"
        assert customer.total_orders == 2
        assert customer.first_order_date == JAN_1
        assert customer.last_order_date == JAN_2
        assert customer.total_spent == Decimal("150.00")
        assert customer.average_order_value == Decimal("75.00")

        _persist(db_session, persist_shopify_orders, shopify_ctx, [normalize_order(first)])
        db_session.expire_all()

        customer = db_session.query(DimShopifyCustomer).one()
        assert customer.total_orders == 2
        assert customer.total_spent == Decimal("150.00")

    def test_orders_without_customer_skip_the_dimension(self, db_session, shopify_ctx, order_node):
        guest = order_node(1, "2024-01-01T09:00:00Z")
        guest["customer"] = None

        _persist(db_session, persist_shopify_orders, shopify_ctx, [normalize_order(guest)])

        assert db_session.query(DimShopifyCustomer).count() == 0
        assert db_session.query(DailyShopifyMetrics).count() == 1


class TestMetaPersistence:
    def test_writes_every_layer_with_roas(self, db_session, meta_ctx, insight_row):
        rows = [
            normalize_insight(insight_row("ad_1", "2024-01-01", spend="10.00", purchase_value="30.00"), JAN_1),
            normalize_insight(insight_row("ad_2", "2024-01-01", spend="30.00", purchase_value="50.00"), JAN_1),
            normalize_insight(insight_row("ad_1", "2024-01-02", spend="0", purchases="0", purchase_value="0"), JAN_2),
        ]

        outcome = _persist(db_session, persist_meta_insights, meta_ctx, rows)

        assert outcome.persisted_rows == 3
        assert db_session.query(MetaInsightRaw).count() == 3
        assert db_session.query(FactMetaDaily).count() == 3

        day1 = db_session.query(DailyMetaMetrics).filter_by(date=JAN_1).one()
        assert day1.spend == Decimal("40.00")
        assert day1.purchases == 2
        assert day1.purchase_value == Decimal("80.00")
        assert day1.roas == Decimal("2.0000")

        day2 = db_session.query(DailyMetaMetrics).filter_by(date=JAN_2).one()
        assert day2.roas is None

    def test_rerun_is_idempotent(self, db_session, meta_ctx, insight_row):
        rows = [normalize_insight(insight_row("ad_1", "2024-01-01"), JAN_1)]

        _persist(db_session, persist_meta_insights, meta_ctx, rows)
        _persist(db_session, persist_meta_insights, meta_ctx, rows)

        assert db_session.query(MetaInsightRaw).count() == 1
        assert db_session.query(FactMetaDaily).count() == 1
        assert db_session.query(DailyMetaMetrics).count() == 1


class TestDailySummary:
    def test_platform_runs_do_not_erase_each_other(
        self, db_session, make_shopify_integration, make_meta_integration, order_node, insight_row
    ):
        """WHAT: Shopify and Meta runs for the same date blend into one summary row.
        WHY: The summary is rebuilt from every platform's aggregates, not the caller's.
        """
        shopify_ctx = load_shopify_context(db_session, str(make_shopify_integration().id))
        meta_ctx = load_meta_context(db_session, str(make_meta_integration().id))

        _persist(db_session, persist_meta_insights, meta_ctx, [
            normalize_insight(insight_row("ad_1", "2024-01-01", spend="50.00"), JAN_1),
        ])
        _persist(db_session, persist_shopify_orders, shopify_ctx, [
            normalize_order(order_node(1, "2024-01-01T09:00:00Z", total="200.00")),
        ])

        summary = db_session.query(DailySummary).filter_by(date=JAN_1).one()
        assert summary.meta_spend == Decimal("50.00")
        assert summary.revenue_net == Decimal("200.00")
        assert summary.blended_roas == Decimal("4.0000")

        # Re-running Meta keeps the Shopify contribution
        _persist(db_session, persist_meta_insights, meta_ctx, [
            normalize_insight(insight_row("ad_1", "2024-01-01", spend="100.00"), JAN_1),
        ])
        summary = db_session.query(DailySummary).filter_by(date=JAN_1).one()
        assert summary.orders == 1
        assert summary.revenue_net == Decimal("200.00")
        assert summary.meta_spend == Decimal("100.00")
        assert summary.blended_roas == Decimal("2.0000")


class TestRunInTransaction:
    def test_database_error_rolls_back_everything(self, db_session, shopify_ctx, order_node):
        store = CursorStore.shopify(shopify_ctx.integration_id)
        orders = [normalize_order(order_node(1, "2024-01-01T09:00:00Z"))]

        def work(session):
            persist_shopify_orders(session, shopify_ctx, orders)
            store.advance_if_greater(session, "2024-01-01T09:00:00Z")
            raise IntegrityError("INSERT", {}, Exception("boom"))

        with pytest.raises(PersistenceError) as exc_info:
            run_in_transaction(db_session, work)

        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert db_session.query(ShopifyOrderRaw).count() == 0
        assert db_session.query(FactShopifyOrder).count() == 0
        assert db_session.query(SyncCursor).count() == 0

    def test_other_errors_roll_back_and_propagate(self, db_session, shopify_ctx, order_node):
        orders = [normalize_order(order_node(1, "2024-01-01T09:00:00Z"))]

        def work(session):
            persist_shopify_orders(session, shopify_ctx, orders)
            raise KeyError("payload")

        with pytest.raises(KeyError):
            run_in_transaction(db_session, work)

        assert db_session.query(ShopifyOrderRaw).count() == 0
