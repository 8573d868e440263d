"""SQLAlchemy ORM models and enums.

The warehouse is layered per platform:

    raw mirror (upserted)  ->  fact rows (replaced per date)
        ->  daily aggregates (rebuilt per date)  ->  daily_summary (all platforms)

Integrations, shops, ad accounts and secrets are written by the install flow
and only read here. `sync_cursors` and `sync_runs` are owned by the engine.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire package
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"
    shopify = "shopify"


class SyncRunStatusEnum(str, enum.Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


def _enum_values(obj):
    return [e.value for e in obj]


# Tenancy & integrations ----------------------------------------

class Workspace(Base):
    """Tenant account. Every integration and warehouse row is scoped to one."""
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    integrations = relationship("Integration", back_populates="workspace")

    def __str__(self):
        return self.name


class ShopifyShop(Base):
    """Shopify store metadata linked from a Shopify integration."""
    __tablename__ = "shopify_shops"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    shop_domain = Column(String, nullable=False)  # e.g. "mystore.myshopify.com"
    currency = Column(String, nullable=True)
    timezone = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return self.shop_domain


class MetaAdAccount(Base):
    """Meta ad account linked from a Meta integration.

    `platform_ad_account_id` may be stored with or without the "act_" prefix;
    the context resolver normalizes it.
    """
    __tablename__ = "meta_ad_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    platform_ad_account_id = Column(String, nullable=False)
    attribution_window_days = Column(Integer, nullable=True)  # defaults to 7 when unset
    timezone = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Integration(Base):
    """One workspace's authorized connection to one platform.

    Exactly one of `shop_id` / `ad_account_id` is set, depending on provider.
    Status transitions belong to the install flow.
    """
    __tablename__ = "integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    status = Column(String, nullable=False, default="connected")  # connected, error, disconnected
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=True)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    workspace = relationship("Workspace", back_populates="integrations")
    shop = relationship("ShopifyShop")
    ad_account = relationship("MetaAdAccount")
    secrets = relationship("IntegrationSecret", back_populates="integration", cascade="all, delete-orphan")


class IntegrationSecret(Base):
    """Encrypted credential for an integration (see syncengine.security)."""
    __tablename__ = "integration_secrets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    key = Column(String, nullable=False)  # shopify_offline_token, meta_access_token
    value_encrypted = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    integration = relationship("Integration", back_populates="secrets")


# Shopify warehouse ---------------------------------------------

class ShopifyOrderRaw(Base):
    """Verbatim order payload; replay source for fact_shopify_orders."""
    __tablename__ = "shopify_orders_raw"
    __table_args__ = (
        UniqueConstraint("integration_id", "shopify_order_id", "grain", name="uq_shopify_orders_raw"),
        Index("ix_shopify_orders_raw_integration_date", "integration_id", "order_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    shopify_order_id = Column(String, nullable=False)  # gid://shopify/Order/123
    grain = Column(String, nullable=False, default="order")
    order_date = Column(Date, nullable=False)  # UTC date of createdAt; never changes
    order_updated_at = Column(String, nullable=True)  # ISO timestamp as sent by Shopify
    payload = Column(JSON, nullable=False)
    last_synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FactShopifyOrder(Base):
    __tablename__ = "fact_shopify_orders"
    __table_args__ = (
        Index("ix_fact_shopify_orders_integration_date", "integration_id", "order_date"),
        Index("ix_fact_shopify_orders_shop_date", "shop_id", "order_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    order_date = Column(Date, nullable=False)
    order_created_at = Column(DateTime, nullable=False)  # UTC, naive
    shopify_order_id = Column(String, nullable=False)
    order_name = Column(String, nullable=False)
    order_status = Column(String, nullable=True)
    financial_status = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    total_gross = Column(Numeric(18, 4), nullable=False, default=0)
    total_net = Column(Numeric(18, 4), nullable=False, default=0)
    refund_total = Column(Numeric(18, 4), nullable=False, default=0)
    subtotal = Column(Numeric(18, 4), nullable=False, default=0)
    total_discounts = Column(Numeric(18, 4), nullable=False, default=0)
    total_shipping = Column(Numeric(18, 4), nullable=False, default=0)
    total_tax = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=True)
    shopify_customer_id = Column(String, nullable=True)
    is_first_order = Column(Boolean, nullable=True)
    sales_channel = Column(String, nullable=True)
    source_name = Column(String, nullable=True)
    shipping_country = Column(String, nullable=True)
    shipping_region = Column(String, nullable=True)


class FactShopifyOrderLine(Base):
    __tablename__ = "fact_shopify_order_lines"
    __table_args__ = (
        Index("ix_fact_shopify_order_lines_integration_date", "integration_id", "order_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    order_date = Column(Date, nullable=False)
    shopify_order_id = Column(String, nullable=False)
    shopify_product_id = Column(String, nullable=True)
    shopify_variant_id = Column(String, nullable=True)
    product_title = Column(String, nullable=False)
    variant_title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    unit_price = Column(Numeric(18, 4), nullable=False, default=0)
    line_total = Column(Numeric(18, 4), nullable=False, default=0)


class DailyShopifyMetrics(Base):
    __tablename__ = "daily_shopify_metrics"
    __table_args__ = (UniqueConstraint("shop_id", "date", name="uq_daily_shopify_metrics"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    orders = Column(Integer, nullable=False, default=0)
    revenue_gross = Column(Numeric(18, 4), nullable=False, default=0)
    revenue_net = Column(Numeric(18, 4), nullable=False, default=0)
    refunds = Column(Numeric(18, 4), nullable=False, default=0)
    aov = Column(Numeric(18, 4), nullable=True)  # revenue_net / orders
    total_discounts = Column(Numeric(18, 4), nullable=False, default=0)
    total_shipping = Column(Numeric(18, 4), nullable=False, default=0)
    total_tax = Column(Numeric(18, 4), nullable=False, default=0)
    new_customers = Column(Integer, nullable=False, default=0)
    returning_customers = Column(Integer, nullable=False, default=0)
    returning_customer_rate = Column(Numeric(18, 6), nullable=True)


class DailyShopifySalesByChannel(Base):
    __tablename__ = "daily_shopify_sales_by_channel"
    __table_args__ = (
        UniqueConstraint("shop_id", "date", "sales_channel", name="uq_daily_shopify_sales_by_channel"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    sales_channel = Column(String, nullable=False)
    orders = Column(Integer, nullable=False, default=0)
    revenue_net = Column(Numeric(18, 4), nullable=False, default=0)


class DailyShopifyProductMetrics(Base):
    """Units and line revenue per product variant and day, from fact_shopify_order_lines."""
    __tablename__ = "daily_shopify_product_metrics"
    __table_args__ = (
        UniqueConstraint(
            "shop_id", "date", "shopify_product_id", "shopify_variant_id",
            name="uq_daily_shopify_product_metrics",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    shopify_product_id = Column(String, nullable=False)  # "unknown" for deleted products
    shopify_variant_id = Column(String, nullable=False)  # "unknown" when the line has no variant
    product_title = Column(String, nullable=False)
    variant_title = Column(String, nullable=True)
    quantity_sold = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(18, 4), nullable=False, default=0)
    orders_count = Column(Integer, nullable=False, default=0)  # distinct orders containing the variant


class DailyShopifySalesByLocation(Base):
    __tablename__ = "daily_shopify_sales_by_location"
    __table_args__ = (
        Index("ix_daily_shopify_sales_by_location_shop_date", "shop_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    country = Column(String, nullable=False)  # "Unknown" without a shipping address
    region = Column(String, nullable=True)
    orders = Column(Integer, nullable=False, default=0)
    revenue_net = Column(Numeric(18, 4), nullable=False, default=0)
    new_customers = Column(Integer, nullable=False, default=0)


class HourlyShopifySales(Base):
    """Orders and net revenue per UTC hour of order creation."""
    __tablename__ = "hourly_shopify_sales"
    __table_args__ = (UniqueConstraint("shop_id", "date", "hour", name="uq_hourly_shopify_sales"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    hour = Column(Integer, nullable=False)  # 0-23
    orders = Column(Integer, nullable=False, default=0)
    revenue_net = Column(Numeric(18, 4), nullable=False, default=0)


class DimShopifyCustomer(Base):
    """Customer dimension per shop.

    Identity fields come from the latest order seen for the customer; order
    history columns are recomputed from fact_shopify_orders on every run that
    touches the customer.
    """
    __tablename__ = "dim_shopify_customers"
    __table_args__ = (
        UniqueConstraint("shop_id", "shopify_customer_id", name="uq_dim_shopify_customers"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shopify_shops.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    shopify_customer_id = Column(String, nullable=False)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    total_orders = Column(Integer, nullable=False, default=0)  # lifetime count reported by Shopify
    tags = Column(JSON, nullable=True)
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    first_order_date = Column(Date, nullable=True)
    last_order_date = Column(Date, nullable=True)
    total_spent = Column(Numeric(18, 4), nullable=False, default=0)
    average_order_value = Column(Numeric(18, 4), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Meta warehouse ------------------------------------------------

class MetaInsightRaw(Base):
    """Verbatim ad-level insight row per (ad, date)."""
    __tablename__ = "meta_insights_raw"
    __table_args__ = (
        UniqueConstraint("integration_id", "ad_id", "date", "level", name="uq_meta_insights_raw"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    platform_ad_account_id = Column(String, nullable=False)
    ad_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    level = Column(String, nullable=False, default="ad")
    ad_effective_status = Column(String, nullable=True)
    is_synthetic = Column(Boolean, nullable=False, default=False)  # stub-mode rows
    payload = Column(JSON, nullable=False)
    last_synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FactMetaDaily(Base):
    __tablename__ = "fact_meta_daily"
    __table_args__ = (
        Index("ix_fact_meta_daily_scope_date", "integration_id", "ad_account_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    campaign_id = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    ad_id = Column(String, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)
    purchase_value = Column(Numeric(18, 4), nullable=False, default=0)
    is_synthetic = Column(Boolean, nullable=False, default=False)


class DailyMetaMetrics(Base):
    __tablename__ = "daily_meta_metrics"
    __table_args__ = (UniqueConstraint("ad_account_id", "date", name="uq_daily_meta_metrics"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)
    purchase_value = Column(Numeric(18, 4), nullable=False, default=0)
    roas = Column(Numeric(18, 4), nullable=True)  # purchase_value / spend, NULL without spend


# Cross-platform ------------------------------------------------

class DailySummary(Base):
    """Blended per-workspace rollup over every shop and ad account."""
    __tablename__ = "daily_summary"
    __table_args__ = (UniqueConstraint("workspace_id", "date", name="uq_daily_summary"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    date = Column(Date, nullable=False)
    orders = Column(Integer, nullable=False, default=0)
    revenue_gross = Column(Numeric(18, 4), nullable=False, default=0)
    revenue_net = Column(Numeric(18, 4), nullable=False, default=0)
    meta_spend = Column(Numeric(18, 4), nullable=False, default=0)
    meta_purchases = Column(Integer, nullable=False, default=0)
    meta_purchase_value = Column(Numeric(18, 4), nullable=False, default=0)
    blended_roas = Column(Numeric(18, 4), nullable=True)  # revenue_net / meta_spend


# Engine state --------------------------------------------------

class SyncCursor(Base):
    """Durable watermark keyed by (integration, job_type, cursor_key)."""
    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("integration_id", "job_type", "cursor_key", name="uq_sync_cursor"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    job_type = Column(String, nullable=False)
    cursor_key = Column(String, nullable=False)
    cursor_value = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncRun(Base):
    """One invocation of a job handler, created by the dispatcher."""
    __tablename__ = "sync_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False)
    job_type = Column(String, nullable=False)
    trigger = Column(String, nullable=False, default="manual")
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(Enum(SyncRunStatusEnum, values_callable=_enum_values), nullable=False, default=SyncRunStatusEnum.queued)

    # Set while a run is waiting out a platform rate limit
    rate_limited = Column(Boolean, nullable=False, default=False)
    rate_limit_reset_at = Column(DateTime, nullable=True)

    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    stats = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
