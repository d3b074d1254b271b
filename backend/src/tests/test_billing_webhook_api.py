"""
End-to-end tests for POST /webhooks/billing.

CRITICAL:
- Unsigned or tampered bodies are rejected with 400 and never written
- Terminal failures are acknowledged with 200 so the provider stops retrying
- Retryable failures answer 503 so the provider redelivers
"""

import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from src.billing.errors import ProviderAPIError, TransientStoreError
from src.billing.events import ProviderSubscription
from src.billing.signature import build_signature_header
from src.integrations.stripe.billing_client import StripeBillingClient
from src.main import create_app
from src.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier

WEBHOOK_SECRET = "whsec_test_secret"


def _row_count(db_session, user_id="U1"):
    return db_session.execute(
        select(func.count()).select_from(Subscription).where(Subscription.user_id == user_id)
    ).scalar_one()


class TestScenarios:

    def test_a_subscription_created_writes_premium_active_row(self, post_webhook, make_event, subscription_object, store, db_session):
        response = post_webhook(make_event("customer.subscription.created", subscription_object()))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert _row_count(db_session) == 1
        record = store.get_by_user_id("U1")
        assert record.tier is SubscriptionTier.PREMIUM
        assert record.status is SubscriptionStatus.ACTIVE

    def test_b_redelivery_leaves_row_unchanged(self, post_webhook, make_event, subscription_object, store, db_session):
        payload = make_event("customer.subscription.created", subscription_object())

        assert post_webhook(payload).status_code == 200
        first = store.get_by_user_id("U1")
        assert post_webhook(payload).status_code == 200

        assert _row_count(db_session) == 1
        assert store.get_by_user_id("U1") == first

    def test_c_flipped_signature_rejected_without_write(self, post_webhook, make_event, subscription_object, db_session):
        body = json.dumps(make_event("customer.subscription.created", subscription_object())).encode("utf-8")
        header = build_signature_header(body, WEBHOOK_SECRET)
        flipped = header[:-1] + ("0" if header[-1] != "0" else "1")

        response = post_webhook(body, signature=flipped)

        assert response.status_code == 400
        assert "error" in response.json()
        assert _row_count(db_session) == 0

    def test_d_deleted_soft_deletes(self, post_webhook, make_event, subscription_object, store):
        post_webhook(make_event("customer.subscription.created", subscription_object()))

        before = datetime.now(timezone.utc)
        response = post_webhook(
            make_event("customer.subscription.deleted", subscription_object(status="canceled"), event_id="evt_2")
        )

        assert response.status_code == 200
        record = store.get_by_user_id("U1")
        assert record.status is SubscriptionStatus.CANCELED
        assert record.cancel_at_period_end is False
        assert before - timedelta(seconds=5) <= record.end_date <= datetime.now(timezone.utc) + timedelta(seconds=5)

    def test_e_payment_failed_three_times_cancels(self, post_webhook, make_event, subscription_object, invoice_object, store):
        post_webhook(make_event("customer.subscription.created", subscription_object()))

        for attempt in (1, 2):
            post_webhook(make_event("invoice.payment_failed", invoice_object(attempt_count=attempt), event_id=f"evt_f{attempt}"))
            assert store.get_by_user_id("U1").status is SubscriptionStatus.PAST_DUE

        post_webhook(make_event("invoice.payment_failed", invoice_object(attempt_count=3), event_id="evt_f3"))
        assert store.get_by_user_id("U1").status is SubscriptionStatus.CANCELED


class TestRejections:

    def test_missing_signature_header(self, client, make_event, subscription_object):
        body = json.dumps(make_event("customer.subscription.created", subscription_object()))
        response = client.post("/webhooks/billing", content=body)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid webhook signature"

    def test_wrong_secret(self, post_webhook, make_event, subscription_object):
        response = post_webhook(make_event("customer.subscription.created", subscription_object()), secret="whsec_other")
        assert response.status_code == 400

    def test_stale_timestamp_replay(self, post_webhook, make_event, subscription_object, db_session):
        response = post_webhook(
            make_event("customer.subscription.created", subscription_object()),
            timestamp=int(time.time()) - 3600,
        )
        assert response.status_code == 400
        assert _row_count(db_session) == 0

    def test_signed_but_malformed_json(self, post_webhook):
        response = post_webhook(b"{not json")

        assert response.status_code == 400
        assert "Invalid JSON" in response.json()["error"]

    def test_signed_but_missing_type(self, post_webhook):
        response = post_webhook({"id": "evt_1", "data": {"object": {}}})
        assert response.status_code == 400

    def test_signature_alias_header(self, post_webhook, make_event, subscription_object, store):
        response = post_webhook(make_event("customer.subscription.created", subscription_object()), header_name="Signature")

        assert response.status_code == 200
        assert store.get_by_user_id("U1") is not None


class TestAcknowledgedNoops:

    def test_unknown_event_type(self, post_webhook, make_event, db_session):
        response = post_webhook(make_event("customer.created", {"id": "cus_1"}))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert _row_count(db_session) == 0

    def test_missing_correlation_acknowledged(self, post_webhook, make_event, subscription_object, db_session):
        response = post_webhook(make_event("customer.subscription.created", subscription_object(user_id=None)))

        assert response.status_code == 200
        assert db_session.execute(select(func.count()).select_from(Subscription)).scalar_one() == 0

    def test_delete_for_unknown_subscription(self, post_webhook, make_event, subscription_object):
        response = post_webhook(make_event("customer.subscription.deleted", subscription_object(subscription_id="sub_x")))
        assert response.status_code == 200

    def test_checkout_provider_rejection_is_terminal(self, post_webhook, make_event, stripe_client):
        stripe_client.retrieve_subscription.side_effect = ProviderAPIError("missing", provider_status=404)
        session = {"id": "cs_1", "subscription": "sub_gone", "metadata": {"user_id": "U1"}}

        response = post_webhook(make_event("checkout.session.completed", session))

        assert response.status_code == 200

    def test_checkout_with_unusable_provider_subscription_is_acknowledged(self, settings, engine, cache, make_event, store):
        def handler(request):
            return httpx.Response(200, json={"id": "sub_1"})

        stripe_client = StripeBillingClient("sk_test_123", transport=httpx.MockTransport(handler))
        client = TestClient(create_app(settings, engine=engine, stripe_client=stripe_client, subscription_cache=cache))
        session = {"id": "cs_1", "subscription": "sub_1", "metadata": {"user_id": "U1"}}
        body = json.dumps(make_event("checkout.session.completed", session)).encode("utf-8")

        response = client.post(
            "/webhooks/billing",
            content=body,
            headers={"Stripe-Signature": build_signature_header(body, WEBHOOK_SECRET)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert store.get_by_user_id("U1") is None


class TestRetryable:

    def test_store_outage_returns_503(self, post_webhook, make_event, subscription_object):
        with patch(
            "src.services.subscription_store.SubscriptionStore.upsert_subscription",
            side_effect=TransientStoreError(),
        ):
            response = post_webhook(make_event("customer.subscription.created", subscription_object()))

        assert response.status_code == 503
        assert "error" in response.json()

    def test_checkout_provider_outage_returns_503(self, post_webhook, make_event, stripe_client, store):
        stripe_client.retrieve_subscription.side_effect = ProviderAPIError("down", provider_status=502)
        session = {"id": "cs_1", "subscription": "sub_123", "metadata": {"user_id": "U1"}}

        response = post_webhook(make_event("checkout.session.completed", session))

        assert response.status_code == 503
        assert store.get_by_user_id("U1") is None

    def test_redelivery_after_outage_applies(self, post_webhook, make_event, stripe_client, subscription_object, store):
        session = {"id": "cs_1", "subscription": "sub_123", "metadata": {"user_id": "U1"}}
        payload = make_event("checkout.session.completed", session)
        stripe_client.retrieve_subscription.side_effect = ProviderAPIError("down", provider_status=500)
        assert post_webhook(payload).status_code == 503

        stripe_client.retrieve_subscription.side_effect = None
        stripe_client.retrieve_subscription.return_value = ProviderSubscription.model_validate(subscription_object())
        assert post_webhook(payload).status_code == 200
        assert store.get_by_user_id("U1").status is SubscriptionStatus.ACTIVE
