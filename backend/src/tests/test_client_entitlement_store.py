"""Tests for client-facing subscription operations."""

from datetime import datetime, timedelta, timezone

import pytest

from src.billing.errors import BillingActionError, ProviderAPIError
from src.billing.events import ProviderSubscription
from src.models.subscription import SubscriptionStatus, SubscriptionTier
from src.platform.user_context import UserContext
from src.services.client_entitlement_store import (
    CANCEL_UNAVAILABLE_MESSAGE,
    NO_SUBSCRIPTION_MESSAGE,
    PORTAL_UNAVAILABLE_MESSAGE,
    ClientEntitlementStore,
)
from src.services.subscription_reconciler import build_record_values

USER = UserContext(user_id="U1", email="user@example.com")
ADMIN = UserContext(user_id="A1", email="admin@example.com", is_admin=True)


@pytest.fixture
def entitlements(store, stripe_client, cache):
    return ClientEntitlementStore(USER, store, stripe_client, cache=cache)


@pytest.fixture
def active_subscription(store, subscription_object):
    values = build_record_values(ProviderSubscription.model_validate(subscription_object()), "U1")
    store.upsert_subscription(values)
    return values


class TestLoadSubscription:

    def test_absent_row_gives_free_default(self, entitlements):
        record = entitlements.load_subscription()

        assert record.tier is SubscriptionTier.FREE
        assert record.status is SubscriptionStatus.NONE
        assert record.user_id == "U1"

    def test_returns_stored_row(self, entitlements, active_subscription):
        record = entitlements.load_subscription()

        assert record.tier is SubscriptionTier.PREMIUM
        assert record.stripe_subscription_id == "sub_123"

    def test_admin_gets_synthesized_premium(self, store, stripe_client):
        record = ClientEntitlementStore(ADMIN, store, stripe_client).load_subscription()

        assert record.tier is SubscriptionTier.PREMIUM
        assert record.status is SubscriptionStatus.ACTIVE

    def test_result_is_cached(self, entitlements, active_subscription, cache):
        entitlements.load_subscription()
        assert cache.get("U1").stripe_subscription_id == "sub_123"


class TestCheckAccess:

    def test_free_user_denied_premium(self, entitlements):
        assert entitlements.check_access("ai-chat") is False
        assert entitlements.check_access("courses") is True

    def test_subscriber_allowed(self, entitlements, active_subscription):
        assert entitlements.check_access("ai-chat") is True

    def test_admin_allowed_without_row(self, store, stripe_client):
        assert ClientEntitlementStore(ADMIN, store, stripe_client).check_access("development") is True


class TestCancelSubscription:

    @pytest.mark.asyncio
    async def test_cancel_is_at_period_end(self, entitlements, active_subscription, stripe_client, subscription_object):
        stripe_client.cancel_at_period_end.return_value = ProviderSubscription.model_validate(
            subscription_object(cancel_at_period_end=True)
        )

        record = await entitlements.cancel_subscription()

        stripe_client.cancel_at_period_end.assert_awaited_once_with("sub_123")
        assert record.status is SubscriptionStatus.ACTIVE_UNTIL_PERIOD_END
        assert record.cancel_at_period_end is True
        assert record.end_date == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert entitlements.check_access("ai-chat", now=record.end_date - timedelta(days=1)) is True

    @pytest.mark.asyncio
    async def test_no_subscription(self, entitlements, stripe_client):
        with pytest.raises(BillingActionError) as exc_info:
            await entitlements.cancel_subscription()

        assert exc_info.value.message == NO_SUBSCRIPTION_MESSAGE
        stripe_client.cancel_at_period_end.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_rejection_is_actionable(self, entitlements, active_subscription, stripe_client):
        stripe_client.cancel_at_period_end.side_effect = ProviderAPIError("bad", provider_status=400)

        with pytest.raises(BillingActionError) as exc_info:
            await entitlements.cancel_subscription()
        assert "contact support" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_provider_outage_is_actionable(self, entitlements, active_subscription, stripe_client, store):
        stripe_client.cancel_at_period_end.side_effect = ProviderAPIError(
            "Request failed: connection refused to api.stripe.com:443"
        )

        with pytest.raises(BillingActionError) as exc_info:
            await entitlements.cancel_subscription()

        assert exc_info.value.status_code == 503
        assert exc_info.value.message == CANCEL_UNAVAILABLE_MESSAGE
        assert store.get_by_user_id("U1").status is SubscriptionStatus.ACTIVE


class TestBillingPortal:

    @pytest.mark.asyncio
    async def test_returns_portal_url(self, entitlements, active_subscription, stripe_client):
        url = await entitlements.open_billing_portal("https://app.example.com/account")

        assert url == "https://billing.stripe.com/session/abc"
        stripe_client.create_billing_portal_session.assert_awaited_once_with(
            "cus_123", "https://app.example.com/account"
        )

    @pytest.mark.asyncio
    async def test_unconfigured_portal_message(self, entitlements, active_subscription, stripe_client):
        stripe_client.create_billing_portal_session.side_effect = ProviderAPIError(
            "Stripe API error: 400",
            provider_status=400,
            provider_message="No configuration provided and your test mode default configuration has not been created.",
        )

        with pytest.raises(BillingActionError) as exc_info:
            await entitlements.open_billing_portal("https://app.example.com/account")

        assert exc_info.value.message == PORTAL_UNAVAILABLE_MESSAGE
        assert "Stripe" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_no_customer(self, entitlements, stripe_client):
        with pytest.raises(BillingActionError):
            await entitlements.open_billing_portal("https://app.example.com/account")
        stripe_client.create_billing_portal_session.assert_not_awaited()
