"""Load integration context for a job run.

WHAT:
    Reads the integration, its platform account (shop or ad account) and its
    latest credential, and returns an immutable context object with the
    decrypted token.

WHY:
    Job handlers should never touch the integration tables directly; a single
    authoritative read at the start of the run keeps the rest of the run free
    of credential lookups. Failures are fatal for the run and never retried here.

REFERENCES:
    - syncengine/models.py: Integration, IntegrationSecret, ShopifyShop, MetaAdAccount
    - syncengine/security.py: decrypt_secret
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from syncengine.errors import IntegrationNotFound, MissingCredential
from syncengine.models import Integration, IntegrationSecret, ProviderEnum
from syncengine.security import decrypt_secret
from syncengine.services.meta_normalizer import normalize_ad_account_id

logger = logging.getLogger(__name__)

SHOPIFY_TOKEN_KEY = "shopify_offline_token"
META_TOKEN_KEY = "meta_access_token"
DEFAULT_ATTRIBUTION_WINDOW_DAYS = 7
INACTIVE_STATUSES = {"disconnected"}


@dataclass(frozen=True)
class ShopifyIntegrationContext:
    integration_id: UUID
    workspace_id: UUID
    shop_id: UUID
    shop_domain: str
    access_token: str
    currency: Optional[str] = None
    timezone: Optional[str] = None


@dataclass(frozen=True)
class MetaIntegrationContext:
    integration_id: UUID
    workspace_id: UUID
    ad_account_id: UUID
    platform_ad_account_id: str
    access_token: str
    attribution_window_days: int = DEFAULT_ATTRIBUTION_WINDOW_DAYS
    timezone: Optional[str] = None
    display_name: Optional[str] = None


def _as_uuid(integration_id: str) -> UUID:
    try:
        return UUID(str(integration_id))
    except ValueError as exc:
        raise IntegrationNotFound(f"Integration {integration_id} not found", integration_id) from exc


def _load_integration(db: Session, integration_id: str, provider: ProviderEnum) -> Integration:
    integration = (
        db.query(Integration)
        .filter(
            Integration.id == _as_uuid(integration_id),
            Integration.provider == provider,
        )
        .first()
    )
    if not integration or integration.status in INACTIVE_STATUSES:
        raise IntegrationNotFound(f"{provider.value} integration {integration_id} not found", integration_id)
    return integration


def _load_secret(db: Session, integration: Integration, key: str) -> Optional[str]:
    """Latest decrypted secret for a key, or None when no row exists."""
    secret = (
        db.query(IntegrationSecret)
        .filter(
            IntegrationSecret.integration_id == integration.id,
            IntegrationSecret.key == key,
        )
        .order_by(IntegrationSecret.updated_at.desc())
        .first()
    )
    if not secret:
        return None

    try:
        return decrypt_secret(secret.value_encrypted, context=f"{key}:{integration.id}")
    except ValueError as exc:
        raise MissingCredential(
            f"Integration {integration.id} has an unreadable {key}", str(integration.id)
        ) from exc


def load_shopify_context(db: Session, integration_id: str) -> ShopifyIntegrationContext:
    """Resolve a Shopify integration.

    Raises:
        IntegrationNotFound: Unknown/disconnected integration or no linked shop
        MissingCredential: No (readable) offline token
    """
    integration = _load_integration(db, integration_id, ProviderEnum.shopify)
    shop = integration.shop
    if shop is None or not shop.shop_domain:
        raise IntegrationNotFound(
            f"Integration {integration_id} is missing an active Shopify shop", integration_id
        )

    token = _load_secret(db, integration, SHOPIFY_TOKEN_KEY)
    if not token:
        raise MissingCredential(f"Integration {integration_id} is missing a Shopify offline token", integration_id)

    logger.info("[CONTEXT] Loaded Shopify integration %s (shop=%s)", integration_id, shop.shop_domain)
    return ShopifyIntegrationContext(
        integration_id=integration.id,
        workspace_id=integration.workspace_id,
        shop_id=shop.id,
        shop_domain=shop.shop_domain,
        access_token=token,
        currency=shop.currency,
        timezone=shop.timezone,
    )


def load_meta_context(db: Session, integration_id: str, *, stub_mode: bool = False) -> MetaIntegrationContext:
    """Resolve a Meta integration.

    In stub mode a missing token is allowed; the context carries an empty token.

    Raises:
        IntegrationNotFound: Unknown/disconnected integration or no linked ad account
        MissingCredential: No (readable) access token outside stub mode
    """
    integration = _load_integration(db, integration_id, ProviderEnum.meta)
    account = integration.ad_account
    if account is None or not account.platform_ad_account_id:
        raise IntegrationNotFound(f"Meta integration {integration_id} is missing an ad account", integration_id)

    token = _load_secret(db, integration, META_TOKEN_KEY)
    if not token and not stub_mode:
        raise MissingCredential(f"Integration {integration_id} is missing a Meta access token", integration_id)

    logger.info("[CONTEXT] Loaded Meta integration %s (ad_account=%s)", integration_id, account.platform_ad_account_id)
    return MetaIntegrationContext(
        integration_id=integration.id,
        workspace_id=integration.workspace_id,
        ad_account_id=account.id,
        platform_ad_account_id=normalize_ad_account_id(account.platform_ad_account_id),
        access_token=token or "",
        attribution_window_days=max(1, account.attribution_window_days or DEFAULT_ATTRIBUTION_WINDOW_DAYS),
        timezone=account.timezone,
        display_name=account.display_name,
    )
