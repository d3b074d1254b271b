"""
Shared fixtures for billing service tests.

Provides an in-memory SQLite database, a fake Stripe client, builders for
provider event payloads, and a TestClient over the full app.
"""

import json
import time
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from src.billing.signature import build_signature_header
from src.config.settings import BillingSettings
from src.database.session import build_session_factory, init_db
from src.main import create_app
from src.services.subscription_cache import SubscriptionCache
from src.services.subscription_store import SubscriptionStore

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"
PERIOD_END = 1893456000  # 2030-01-01T00:00:00Z
CREATED = 1735689600  # 2025-01-01T00:00:00Z


@pytest.fixture
def settings():
    return BillingSettings(
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_secret_key="sk_test_123",
        database_url="sqlite:///:memory:",
        supabase_jwt_secret=JWT_SECRET,
        admin_emails=frozenset({"admin@example.com"}),
        app_base_url="https://app.example.com",
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    return SubscriptionStore(db_session)


@pytest.fixture
def cache():
    return SubscriptionCache(redis_url=None, ttl_seconds=300)


@pytest.fixture
def stripe_client():
    """Stripe client double; async methods return values tests configure."""
    client = MagicMock()
    client.retrieve_subscription = AsyncMock()
    client.list_subscriptions = AsyncMock(return_value=[])
    client.list_customers_by_email = AsyncMock(return_value=[])
    client.create_customer = AsyncMock(return_value="cus_new")
    client.create_checkout_session = AsyncMock()
    client.cancel_at_period_end = AsyncMock()
    client.create_billing_portal_session = AsyncMock(return_value="https://billing.stripe.com/session/abc")
    client.close = AsyncMock()
    return client


@pytest.fixture
def app(settings, engine, stripe_client, cache):
    return create_app(settings, engine=engine, stripe_client=stripe_client, subscription_cache=cache)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def subscription_object():
    """Builder for provider subscription objects."""

    def build(
        subscription_id="sub_123",
        status="active",
        user_id="U1",
        customer="cus_123",
        price_id="price_premium",
        cancel_at_period_end=False,
        current_period_end=PERIOD_END,
        created=CREATED,
    ):
        metadata = {"user_id": user_id} if user_id else {}
        return {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "customer": customer,
            "created": created,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "items": {"data": [{"price": {"id": price_id}}]},
            "metadata": metadata,
        }

    return build


@pytest.fixture
def make_event():
    """Builder for event envelopes."""

    def build(event_type, obj, event_id="evt_1"):
        return {"id": event_id, "type": event_type, "data": {"object": obj}}

    return build


@pytest.fixture
def invoice_object():
    def build(subscription_id="sub_123", attempt_count=1, invoice_id="in_1"):
        return {
            "id": invoice_id,
            "object": "invoice",
            "customer": "cus_123",
            "subscription": subscription_id,
            "attempt_count": attempt_count,
        }

    return build


@pytest.fixture
def post_webhook(client):
    """POST a signed webhook body; returns the response."""

    def post(payload, secret=WEBHOOK_SECRET, timestamp=None, header_name="Stripe-Signature", signature=None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        header = signature or build_signature_header(body, secret, timestamp=timestamp)
        return client.post(
            "/webhooks/billing",
            content=body,
            headers={header_name: header, "Content-Type": "application/json"},
        )

    return post


@pytest.fixture
def auth_headers():
    """Bearer headers for a user id/email pair."""

    def build(user_id="U1", email="user@example.com", expires_in=3600):
        token = jwt.encode(
            {"sub": user_id, "email": email, "exp": int(time.time()) + expires_in, "aud": "authenticated"},
            JWT_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return build
