"""Pytest configuration for sync engine tests

WHAT: Shared fixtures: in-memory database, seeded integrations, Shopify/Meta
      payload builders and a recording sleep.
WHY: Job handlers run end to end against SQLite with HTTP faked through
     httpx.MockTransport, so tests need consistent seed data.
REFERENCES:
    - syncengine/models.py
    - syncengine/security.py (secrets are stored encrypted)
"""

import os
import sys
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Must be URL-safe base64-encoded 32-byte string (syncengine.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from syncengine.config import Settings  # noqa: E402
from syncengine.models import (  # noqa: E402
    Base,
    Integration,
    IntegrationSecret,
    MetaAdAccount,
    ProviderEnum,
    ShopifyShop,
    Workspace,
)
from syncengine.security import encrypt_secret  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast backoff and stub mode off."""
    return Settings(
        META_STUB_MODE=False,
        BACKOFF_INITIAL_SECONDS=2.0,
        BACKOFF_MAX_SECONDS=60.0,
        BACKOFF_MAX_ATTEMPTS=5,
        FILL_WINDOW_DAYS=7,
        SHOPIFY_DEFAULT_LOOKBACK_DAYS=7,
        META_DEFAULT_LOOKBACK_DAYS=30,
    )


@pytest.fixture
def sleeps():
    """Recording replacement for asyncio.sleep; the list holds requested delays."""
    recorded = []

    async def _sleep(seconds: float) -> None:
        recorded.append(seconds)

    _sleep.calls = recorded
    return _sleep


# ============================================================================
# Seed Factories
# ============================================================================

@pytest.fixture
def workspace(db_session) -> Workspace:
    ws = Workspace(name="Test Workspace")
    db_session.add(ws)
    db_session.commit()
    return ws


@pytest.fixture
def make_shopify_integration(db_session, workspace):
    """Factory: Shopify shop + integration + encrypted offline token."""

    def _make(token: str = "shpat_test_token", status: str = "connected", ws: Workspace = None) -> Integration:
        ws = ws or workspace
        shop = ShopifyShop(workspace_id=ws.id, shop_domain="test-store.myshopify.com", currency="EUR")
        db_session.add(shop)
        db_session.flush()

        integration = Integration(
            workspace_id=ws.id,
            provider=ProviderEnum.shopify,
            status=status,
            shop_id=shop.id,
        )
        db_session.add(integration)
        db_session.flush()

        if token:
            db_session.add(IntegrationSecret(
                integration_id=integration.id,
                key="shopify_offline_token",
                value_encrypted=encrypt_secret(token, context="test"),
            ))
        db_session.commit()
        return integration

    return _make


@pytest.fixture
def make_meta_integration(db_session, workspace):
    """Factory: Meta ad account + integration + encrypted access token."""

    def _make(
        token: str = "meta_test_token",
        platform_ad_account_id: str = "1234567890",
        attribution_window_days: int = 7,
        ws: Workspace = None,
    ) -> Integration:
        ws = ws or workspace
        account = MetaAdAccount(
            workspace_id=ws.id,
            platform_ad_account_id=platform_ad_account_id,
            attribution_window_days=attribution_window_days,
        )
        db_session.add(account)
        db_session.flush()

        integration = Integration(
            workspace_id=ws.id,
            provider=ProviderEnum.meta,
            ad_account_id=account.id,
        )
        db_session.add(integration)
        db_session.flush()

        if token:
            db_session.add(IntegrationSecret(
                integration_id=integration.id,
                key="meta_access_token",
                value_encrypted=encrypt_secret(token, context="test"),
            ))
        db_session.commit()
        return integration

    return _make


# ============================================================================
# Payload Builders
# ============================================================================

def _money(amount: str, currency: str = "EUR") -> dict:
    return {"shopMoney": {"amount": amount, "currencyCode": currency}}


@pytest.fixture
def order_node():
    """Builder for a Shopify GraphQL order node."""

    def _build(
        number: int,
        created_at: str,
        updated_at: str = None,
        total: str = "100.00",
        refunded: str = "0.00",
        customer_orders: int = 1,
        channel: str = "Online Store",
    ) -> dict:
        return {
            "id": f"gid://shopify/Order/{number}",
            "name": f"#{number}",
            "createdAt": created_at,
            "updatedAt": updated_at or created_at,
            "cancelledAt": None,
            "displayFinancialStatus": "PAID",
            "displayFulfillmentStatus": "FULFILLED",
            "currencyCode": "EUR",
            "sourceName": "web",
            "currentTotalPriceSet": _money(total),
            "totalPriceSet": _money(total),
            "subtotalPriceSet": _money(total),
            "totalRefundedSet": _money(refunded),
            "totalDiscountsSet": _money("0.00"),
            "totalShippingPriceSet": _money("0.00"),
            "totalTaxSet": _money("0.00"),
            "channelInformation": {"channelDefinition": {"channelName": channel, "handle": None}},
            "customer": {
                "id": f"gid://shopify/Customer/{number}",
                "email": f"customer{number}@example.com",
                "firstName": "Test",
                "lastName": f"Customer {number}",
                "numberOfOrders": str(customer_orders),
                "tags": ["newsletter"],
            },
            "shippingAddress": {"country": "Netherlands", "province": "Noord-Holland"},
            "lineItems": {
                "edges": [
                    {
                        "node": {
                            "id": f"gid://shopify/LineItem/{number}1",
                            "title": "T-Shirt",
                            "variantTitle": "M",
                            "sku": "TS-M",
                            "quantity": 2,
                            "product": {"id": "gid://shopify/Product/1", "title": "T-Shirt"},
                            "variant": {"id": "gid://shopify/ProductVariant/11", "title": "M", "sku": "TS-M"},
                            "originalUnitPriceSet": _money("50.00"),
                            "discountedUnitPriceSet": _money("50.00"),
                        }
                    }
                ]
            },
        }

    return _build


@pytest.fixture
def orders_page():
    """Builder for a Shopify `orders` GraphQL response body."""

    def _build(nodes, has_next: bool = False, end_cursor: str = None, available: float = 1000.0) -> dict:
        return {
            "data": {
                "orders": {
                    "edges": [{"cursor": f"c{i}", "node": node} for i, node in enumerate(nodes)],
                    "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
                }
            },
            "extensions": {
                "cost": {
                    "requestedQueryCost": 52,
                    "actualQueryCost": 12,
                    "throttleStatus": {
                        "maximumAvailable": 1000.0,
                        "currentlyAvailable": available,
                        "restoreRate": 50.0,
                    },
                }
            },
        }

    return _build


@pytest.fixture
def insight_row():
    """Builder for a Meta ad-level insights row."""

    def _build(ad_id: str, day: str, spend: str = "10.00", purchases: str = "1", purchase_value: str = "30.00") -> dict:
        return {
            "ad_id": ad_id,
            "adset_id": f"as_{ad_id}",
            "campaign_id": "cmp_1",
            "date_start": day,
            "date_stop": day,
            "spend": spend,
            "impressions": "1000",
            "clicks": "25",
            "actions": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": purchases}],
            "action_values": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": purchase_value}],
            "ad_effective_status": "ACTIVE",
        }

    return _build
