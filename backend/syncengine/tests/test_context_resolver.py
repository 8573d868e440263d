"""Tests for integration context resolution."""

from uuid import uuid4

import pytest

from syncengine.errors import IntegrationNotFound, MissingCredential, classify_error
from syncengine.models import IntegrationSecret
from syncengine.services.context_resolver import load_meta_context, load_shopify_context


class TestShopifyContext:
    def test_loads_shop_and_decrypted_token(self, db_session, make_shopify_integration, workspace):
        integration = make_shopify_integration(token="shpat_abc")

        ctx = load_shopify_context(db_session, str(integration.id))

        assert ctx.integration_id == integration.id
        assert ctx.workspace_id == workspace.id
        assert ctx.shop_domain == "test-store.myshopify.com"
        assert ctx.access_token == "shpat_abc"
        assert ctx.currency == "EUR"

    def test_unknown_integration_raises_not_found(self, db_session):
        with pytest.raises(IntegrationNotFound) as exc_info:
            load_shopify_context(db_session, str(uuid4()))
        assert classify_error(exc_info.value) == "INTEGRATION_NOT_FOUND"

    def test_malformed_id_raises_not_found(self, db_session):
        with pytest.raises(IntegrationNotFound):
            load_shopify_context(db_session, "not-a-uuid")

    def test_disconnected_integration_raises_not_found(self, db_session, make_shopify_integration):
        integration = make_shopify_integration(status="disconnected")
        with pytest.raises(IntegrationNotFound):
            load_shopify_context(db_session, str(integration.id))

    def test_wrong_provider_raises_not_found(self, db_session, make_meta_integration):
        """WHAT: A Meta integration id must not resolve as Shopify.
        WHY: Job types are platform-specific; a mismatch is a dispatcher bug.
        """
        integration = make_meta_integration()
        with pytest.raises(IntegrationNotFound):
            load_shopify_context(db_session, str(integration.id))

    def test_missing_token_raises_missing_credential(self, db_session, make_shopify_integration):
        integration = make_shopify_integration(token=None)
        with pytest.raises(MissingCredential) as exc_info:
            load_shopify_context(db_session, str(integration.id))
        assert classify_error(exc_info.value) == "AUTH_ERROR"

    def test_undecryptable_token_raises_missing_credential(self, db_session, make_shopify_integration):
        integration = make_shopify_integration(token=None)
        db_session.add(IntegrationSecret(
            integration_id=integration.id,
            key="shopify_offline_token",
            value_encrypted="not-a-fernet-token",
        ))
        db_session.commit()

        with pytest.raises(MissingCredential):
            load_shopify_context(db_session, str(integration.id))


class TestMetaContext:
    def test_normalizes_ad_account_id_and_attribution_window(self, db_session, make_meta_integration):
        integration = make_meta_integration(platform_ad_account_id="555", attribution_window_days=0)

        ctx = load_meta_context(db_session, str(integration.id))

        assert ctx.platform_ad_account_id == "act_555"
        assert ctx.access_token == "meta_test_token"
        # 0 / unset falls back to the 7-day default
        assert ctx.attribution_window_days == 7

    def test_prefixed_ad_account_id_is_kept(self, db_session, make_meta_integration):
        integration = make_meta_integration(platform_ad_account_id="act_777", attribution_window_days=1)

        ctx = load_meta_context(db_session, str(integration.id))

        assert ctx.platform_ad_account_id == "act_777"
        assert ctx.attribution_window_days == 1

    def test_missing_token_raises_outside_stub_mode(self, db_session, make_meta_integration):
        integration = make_meta_integration(token=None)
        with pytest.raises(MissingCredential):
            load_meta_context(db_session, str(integration.id))

    def test_stub_mode_allows_missing_token(self, db_session, make_meta_integration):
        integration = make_meta_integration(token=None)

        ctx = load_meta_context(db_session, str(integration.id), stub_mode=True)

        assert ctx.access_token == ""
