"""
Billing service dependencies.

Long-lived collaborators (settings, Stripe client, cache) are built once by
the app factory and kept on app.state. Anything bound to a database session
is built per request here.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.api.dependencies.request_db import get_request_db_session
from src.platform.user_context import UserContext, get_user_context
from src.services.checkout_service import CheckoutSessionBridge
from src.services.client_entitlement_store import ClientEntitlementStore
from src.services.subscription_reconciler import SubscriptionReconciler
from src.services.subscription_store import SubscriptionStore


def get_subscription_store(db: Session = Depends(get_request_db_session)) -> SubscriptionStore:
    return SubscriptionStore(db)


def get_reconciler(
    request: Request,
    store: SubscriptionStore = Depends(get_subscription_store),
) -> SubscriptionReconciler:
    state = request.app.state
    return SubscriptionReconciler(store, provider_client=state.stripe_client, cache=state.subscription_cache)


def get_client_entitlement_store(
    request: Request,
    user: UserContext = Depends(get_user_context),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> ClientEntitlementStore:
    state = request.app.state
    return ClientEntitlementStore(user, store, state.stripe_client, cache=state.subscription_cache)


def get_checkout_bridge(
    request: Request,
    store: SubscriptionStore = Depends(get_subscription_store),
) -> CheckoutSessionBridge:
    state = request.app.state
    return CheckoutSessionBridge(store, state.stripe_client, default_origin=state.settings.app_base_url)
