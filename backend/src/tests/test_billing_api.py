"""Tests for the client-facing /api/billing routes."""

from src.billing.errors import ProviderAPIError
from src.billing.events import ProviderSubscription
from src.integrations.stripe.billing_client import StripeCheckoutSession
from src.services.subscription_reconciler import build_record_values


def _subscribe(store, subscription_object, **kwargs):
    values = build_record_values(ProviderSubscription.model_validate(subscription_object(**kwargs)), "U1")
    store.upsert_subscription(values)


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/api/billing/subscription")

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"
        assert response.headers["X-Correlation-ID"]

    def test_expired_token(self, client, auth_headers):
        response = client.get("/api/billing/subscription", headers=auth_headers(expires_in=-60))

        assert response.status_code == 401
        assert response.json()["error"] == "Access token expired"

    def test_bad_signature(self, client):
        response = client.get("/api/billing/subscription", headers={"Authorization": "Bearer not.a.jwt"})
        assert response.status_code == 401


class TestSubscriptionRoutes:

    def test_free_default(self, client, auth_headers):
        response = client.get("/api/billing/subscription", headers=auth_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "free"
        assert body["status"] == "none"

    def test_subscriber(self, client, auth_headers, store, subscription_object):
        _subscribe(store, subscription_object)

        body = client.get("/api/billing/subscription", headers=auth_headers()).json()

        assert body["tier"] == "premium"
        assert body["status"] == "active"
        assert body["cancel_at_period_end"] is False

    def test_access_check(self, client, auth_headers, store, subscription_object):
        assert client.get("/api/billing/access/ai-chat", headers=auth_headers()).json() == {
            "feature": "ai-chat",
            "allowed": False,
        }

        _subscribe(store, subscription_object)

        assert client.get("/api/billing/access/ai-chat", headers=auth_headers(user_id="U1")).json()["allowed"] is True

    def test_admin_email_gets_access(self, client, auth_headers):
        response = client.get("/api/billing/access/development", headers=auth_headers(user_id="A1", email="Admin@Example.com"))
        assert response.json()["allowed"] is True


class TestCancelRoute:

    def test_cancel_sets_grace_period(self, client, auth_headers, store, stripe_client, subscription_object):
        _subscribe(store, subscription_object)
        stripe_client.cancel_at_period_end.return_value = ProviderSubscription.model_validate(
            subscription_object(cancel_at_period_end=True)
        )

        response = client.post("/api/billing/cancel", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["status"] == "active_until_period_end"
        assert response.json()["cancel_at_period_end"] is True

    def test_cancel_without_subscription(self, client, auth_headers):
        response = client.post("/api/billing/cancel", headers=auth_headers())

        assert response.status_code == 404
        assert response.json()["error"] == "No active subscription found"

    def test_cancel_during_provider_outage(self, client, auth_headers, store, stripe_client, subscription_object):
        _subscribe(store, subscription_object)
        stripe_client.cancel_at_period_end.side_effect = ProviderAPIError(
            "Request failed: connection refused to api.stripe.com:443"
        )

        response = client.post("/api/billing/cancel", headers=auth_headers())

        assert response.status_code == 503
        assert response.json()["code"] == "BILLING_ACTION_FAILED"
        assert "api.stripe.com" not in response.json()["error"]


class TestPortalRoute:

    def test_default_return_url(self, client, auth_headers, store, stripe_client, subscription_object):
        _subscribe(store, subscription_object)

        response = client.post("/api/billing/portal", headers=auth_headers())

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/session/abc"}
        stripe_client.create_billing_portal_session.assert_awaited_once_with(
            "cus_123", "https://app.example.com/account"
        )

    def test_portal_unavailable(self, client, auth_headers, store, stripe_client, subscription_object):
        _subscribe(store, subscription_object)
        stripe_client.create_billing_portal_session.side_effect = ProviderAPIError(
            "Stripe API error: 400", provider_status=400, provider_message="No configuration provided"
        )

        response = client.post("/api/billing/portal", headers=auth_headers(), json={"return_url": "https://x/account"})

        assert response.status_code == 503
        assert "contact support" in response.json()["error"]


class TestCheckoutRoute:

    def test_creates_session(self, client, auth_headers, stripe_client):
        stripe_client.create_checkout_session.return_value = StripeCheckoutSession(session_id="cs_1", url="https://pay/cs_1")

        response = client.post(
            "/api/billing/checkout",
            headers={**auth_headers(), "Origin": "https://app.example.com"},
            json={"price_id": "price_premium"},
        )

        assert response.status_code == 200
        assert response.json() == {"session_id": "cs_1", "url": "https://pay/cs_1"}
        assert stripe_client.create_checkout_session.await_args.kwargs["user_id"] == "U1"

    def test_missing_price(self, client, auth_headers):
        response = client.post("/api/billing/checkout", headers=auth_headers(), json={})
        assert response.status_code == 422
