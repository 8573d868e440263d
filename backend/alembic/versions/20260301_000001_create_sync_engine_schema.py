"""Create sync engine schema (integrations, warehouse layers, cursors, runs)

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    Creates every table used by the sync engine:
    - workspaces, shopify_shops, meta_ad_accounts, integrations, integration_secrets
    - shopify_orders_raw, fact_shopify_orders, fact_shopify_order_lines,
      dim_shopify_customers, daily_shopify_metrics, daily_shopify_product_metrics,
      daily_shopify_sales_by_channel, daily_shopify_sales_by_location, hourly_shopify_sales
    - meta_insights_raw, fact_meta_daily, daily_meta_metrics
    - daily_summary
    - sync_cursors, sync_runs

WHY:
    Each platform is stored in layers (raw mirror -> facts -> daily aggregates)
    and blended into a per-workspace daily summary. The unique constraints
    below are the conflict targets of the engine's upserts, so they must
    match syncengine/models.py exactly.

REFERENCES:
    - syncengine/models.py
    - syncengine/services/persistence.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name, *fk, **kwargs):
    return sa.Column(name, postgresql.UUID(as_uuid=True), *fk, **kwargs)


def _money(name):
    return sa.Column(name, sa.Numeric(18, 4), nullable=False, server_default='0')


def _count(name):
    return sa.Column(name, sa.Integer(), nullable=False, server_default='0')


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    provider_enum = postgresql.ENUM('meta', 'shopify', name='providerenum', create_type=False)
    run_status_enum = postgresql.ENUM('queued', 'running', 'succeeded', 'failed', name='syncrunstatusenum', create_type=False)
    provider_enum.create(op.get_bind(), checkfirst=True)
    run_status_enum.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # STEP 2: Tenancy and integrations
    # =========================================================================
    # WHAT: Written by the install flow, read by the context resolver
    op.create_table(
        'workspaces',
        _uuid('id', primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'shopify_shops',
        _uuid('id', primary_key=True),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'meta_ad_accounts',
        _uuid('id', primary_key=True),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('platform_ad_account_id', sa.String(), nullable=False),
        sa.Column('attribution_window_days', sa.Integer(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'integrations',
        _uuid('id', primary_key=True),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('provider', provider_enum, nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='connected'),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=True),
        _uuid('ad_account_id', sa.ForeignKey('meta_ad_accounts.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_integrations_workspace_id', 'integrations', ['workspace_id'])

    op.create_table(
        'integration_secrets',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('value_encrypted', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_integration_secrets_integration_key', 'integration_secrets', ['integration_id', 'key'])

    # =========================================================================
    # STEP 3: Shopify warehouse
    # =========================================================================
    op.create_table(
        'shopify_orders_raw',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('shopify_order_id', sa.String(), nullable=False),
        sa.Column('grain', sa.String(), nullable=False, server_default='order'),
        sa.Column('order_date', sa.Date(), nullable=False),
        sa.Column('order_updated_at', sa.String(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('integration_id', 'shopify_order_id', 'grain', name='uq_shopify_orders_raw'),
    )
    op.create_index('ix_shopify_orders_raw_integration_date', 'shopify_orders_raw', ['integration_id', 'order_date'])

    op.create_table(
        'fact_shopify_orders',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('order_date', sa.Date(), nullable=False),
        sa.Column('order_created_at', sa.DateTime(), nullable=False),
        sa.Column('shopify_order_id', sa.String(), nullable=False),
        sa.Column('order_name', sa.String(), nullable=False),
        sa.Column('order_status', sa.String(), nullable=True),
        sa.Column('financial_status', sa.String(), nullable=True),
        sa.Column('fulfillment_status', sa.String(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        _money('total_gross'),
        _money('total_net'),
        _money('refund_total'),
        _money('subtotal'),
        _money('total_discounts'),
        _money('total_shipping'),
        _money('total_tax'),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('shopify_customer_id', sa.String(), nullable=True),
        sa.Column('is_first_order', sa.Boolean(), nullable=True),
        sa.Column('sales_channel', sa.String(), nullable=True),
        sa.Column('source_name', sa.String(), nullable=True),
        sa.Column('shipping_country', sa.String(), nullable=True),
        sa.Column('shipping_region', sa.String(), nullable=True),
    )
    op.create_index('ix_fact_shopify_orders_integration_date', 'fact_shopify_orders', ['integration_id', 'order_date'])
    op.create_index('ix_fact_shopify_orders_shop_date', 'fact_shopify_orders', ['shop_id', 'order_date'])

    op.create_table(
        'fact_shopify_order_lines',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('order_date', sa.Date(), nullable=False),
        sa.Column('shopify_order_id', sa.String(), nullable=False),
        sa.Column('shopify_product_id', sa.String(), nullable=True),
        sa.Column('shopify_variant_id', sa.String(), nullable=True),
        sa.Column('product_title', sa.String(), nullable=False),
        sa.Column('variant_title', sa.String(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        _count('quantity'),
        _money('unit_price'),
        _money('line_total'),
    )
    op.create_index(
        'ix_fact_shopify_order_lines_integration_date', 'fact_shopify_order_lines', ['integration_id', 'order_date']
    )

    op.create_table(
        'daily_shopify_metrics',
        _uuid('id', primary_key=True),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        _count('orders'),
        _money('revenue_gross'),
        _money('revenue_net'),
        _money('refunds'),
        sa.Column('aov', sa.Numeric(18, 4), nullable=True),
        _money('total_discounts'),
        _money('total_shipping'),
        _money('total_tax'),
        _count('new_customers'),
        _count('returning_customers'),
        sa.Column('returning_customer_rate', sa.Numeric(18, 6), nullable=True),
        sa.UniqueConstraint('shop_id', 'date', name='uq_daily_shopify_metrics'),
    )
    op.create_index('ix_daily_shopify_metrics_workspace_date', 'daily_shopify_metrics', ['workspace_id', 'date'])

    op.create_table(
        'daily_shopify_sales_by_channel',
        _uuid('id', primary_key=True),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('sales_channel', sa.String(), nullable=False),
        _count('orders'),
        _money('revenue_net'),
        sa.UniqueConstraint('shop_id', 'date', 'sales_channel', name='uq_daily_shopify_sales_by_channel'),
    )

    op.create_table(
        'daily_shopify_product_metrics',
        _uuid('id', primary_key=True),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('shopify_product_id', sa.String(), nullable=False),
        sa.Column('shopify_variant_id', sa.String(), nullable=False),
        sa.Column('product_title', sa.String(), nullable=False),
        sa.Column('variant_title', sa.String(), nullable=True),
        _count('quantity_sold'),
        _money('revenue'),
        _count('orders_count'),
        sa.UniqueConstraint(
            'shop_id', 'date', 'shopify_product_id', 'shopify_variant_id',
            name='uq_daily_shopify_product_metrics',
        ),
    )

    op.create_table(
        'daily_shopify_sales_by_location',
        _uuid('id', primary_key=True),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('country', sa.String(), nullable=False),
        sa.Column('region', sa.String(), nullable=True),
        _count('orders'),
        _money('revenue_net'),
        _count('new_customers'),
    )
    op.create_index(
        'ix_daily_shopify_sales_by_location_shop_date', 'daily_shopify_sales_by_location', ['shop_id', 'date']
    )

    op.create_table(
        'hourly_shopify_sales',
        _uuid('id', primary_key=True),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('hour', sa.Integer(), nullable=False),
        _count('orders'),
        _money('revenue_net'),
        sa.UniqueConstraint('shop_id', 'date', 'hour', name='uq_hourly_shopify_sales'),
    )

    op.create_table(
        'dim_shopify_customers',
        _uuid('id', primary_key=True),
        _uuid('shop_id', sa.ForeignKey('shopify_shops.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('shopify_customer_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        _count('total_orders'),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('first_order_date', sa.Date(), nullable=True),
        sa.Column('last_order_date', sa.Date(), nullable=True),
        _money('total_spent'),
        sa.Column('average_order_value', sa.Numeric(18, 4), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('shop_id', 'shopify_customer_id', name='uq_dim_shopify_customers'),
    )

    # =========================================================================
    # STEP 4: Meta warehouse
    # =========================================================================
    op.create_table(
        'meta_insights_raw',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('platform_ad_account_id', sa.String(), nullable=False),
        sa.Column('ad_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('level', sa.String(), nullable=False, server_default='ad'),
        sa.Column('ad_effective_status', sa.String(), nullable=True),
        sa.Column('is_synthetic', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('integration_id', 'ad_id', 'date', 'level', name='uq_meta_insights_raw'),
    )

    op.create_table(
        'fact_meta_daily',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        _uuid('ad_account_id', sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=False),
        _money('spend'),
        _count('impressions'),
        _count('clicks'),
        _count('purchases'),
        _money('purchase_value'),
        sa.Column('is_synthetic', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_fact_meta_daily_scope_date', 'fact_meta_daily', ['integration_id', 'ad_account_id', 'date'])

    op.create_table(
        'daily_meta_metrics',
        _uuid('id', primary_key=True),
        _uuid('ad_account_id', sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        _money('spend'),
        _count('impressions'),
        _count('clicks'),
        _count('purchases'),
        _money('purchase_value'),
        sa.Column('roas', sa.Numeric(18, 4), nullable=True),
        sa.UniqueConstraint('ad_account_id', 'date', name='uq_daily_meta_metrics'),
    )
    op.create_index('ix_daily_meta_metrics_workspace_date', 'daily_meta_metrics', ['workspace_id', 'date'])

    # =========================================================================
    # STEP 5: Cross-platform summary
    # =========================================================================
    op.create_table(
        'daily_summary',
        _uuid('id', primary_key=True),
        _uuid('workspace_id', sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        _count('orders'),
        _money('revenue_gross'),
        _money('revenue_net'),
        _money('meta_spend'),
        _count('meta_purchases'),
        _money('meta_purchase_value'),
        sa.Column('blended_roas', sa.Numeric(18, 4), nullable=True),
        sa.UniqueConstraint('workspace_id', 'date', name='uq_daily_summary'),
    )

    # =========================================================================
    # STEP 6: Engine state
    # =========================================================================
    # WHAT: Watermarks and run records
    # WHY: uq_sync_cursor is the conflict target of the conditional cursor writes
    op.create_table(
        'sync_cursors',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('job_type', sa.String(), nullable=False),
        sa.Column('cursor_key', sa.String(), nullable=False),
        sa.Column('cursor_value', sa.String(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('integration_id', 'job_type', 'cursor_key', name='uq_sync_cursor'),
    )

    op.create_table(
        'sync_runs',
        _uuid('id', primary_key=True),
        _uuid('integration_id', sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('job_type', sa.String(), nullable=False),
        sa.Column('trigger', sa.String(), nullable=False, server_default='manual'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', run_status_enum, nullable=False, server_default='queued'),
        sa.Column('rate_limited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('rate_limit_reset_at', sa.DateTime(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('stats', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sync_runs_integration_job', 'sync_runs', ['integration_id', 'job_type'])


def downgrade() -> None:
    for table in (
        'sync_runs',
        'sync_cursors',
        'daily_summary',
        'daily_meta_metrics',
        'fact_meta_daily',
        'meta_insights_raw',
        'hourly_shopify_sales',
        'daily_shopify_sales_by_location',
        'daily_shopify_sales_by_channel',
        'daily_shopify_product_metrics',
        'daily_shopify_metrics',
        'dim_shopify_customers',
        'fact_shopify_order_lines',
        'fact_shopify_orders',
        'shopify_orders_raw',
        'integration_secrets',
        'integrations',
        'meta_ad_accounts',
        'shopify_shops',
        'workspaces',
    ):
        op.drop_table(table)

    op.execute("DROP TYPE IF EXISTS syncrunstatusenum")
    op.execute("DROP TYPE IF EXISTS providerenum")
