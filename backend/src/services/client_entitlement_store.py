"""
Client-facing subscription operations for one signed-in user.

Thin wrappers over the store, the Stripe client and the evaluator. Provider
failures are reduced to a few actionable messages; raw provider errors never
reach the client.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from src.billing.errors import BillingActionError, ProviderAPIError
from src.entitlements.evaluator import check_access
from src.models.subscription import (
    TERMINAL_STATUSES,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from src.platform.user_context import UserContext
from src.services.subscription_cache import SubscriptionCache
from src.services.subscription_reconciler import build_record_values
from src.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_MESSAGE = "No active subscription found"
CANCEL_FAILED_MESSAGE = "Unable to cancel your subscription right now. Please try again or contact support."
CANCEL_UNAVAILABLE_MESSAGE = (
    "Subscription changes are temporarily unavailable. "
    "Please try again in a few minutes."
)
PORTAL_UNAVAILABLE_MESSAGE = (
    "Billing portal is temporarily unavailable. "
    "Please contact support for assistance with your subscription."
)
PORTAL_FAILED_MESSAGE = "Failed to open billing portal. Please try again later."


class ClientEntitlementStore:
    """
    Subscription state and actions for a single user.

    Constructed per request with the caller's context.
    """

    def __init__(
        self,
        user: UserContext,
        store: SubscriptionStore,
        provider_client,
        cache: Optional[SubscriptionCache] = None,
    ):
        self.user = user
        self.store = store
        self.provider_client = provider_client
        self.cache = cache

    def load_subscription(self, now: Optional[datetime] = None) -> SubscriptionRecord:
        """
        Current subscription record for the user.

        Admins get a synthesized premium/active record; users without a row
        get the free default.
        """
        now = now or datetime.now(timezone.utc)
        if self.user.is_admin:
            return SubscriptionRecord(
                user_id=self.user.user_id,
                tier=SubscriptionTier.PREMIUM,
                status=SubscriptionStatus.ACTIVE,
                start_date=now,
            )

        if self.cache is not None:
            cached = self.cache.get(self.user.user_id)
            if cached is not None:
                return cached

        record = self.store.get_by_user_id(self.user.user_id)
        if record is None:
            return SubscriptionRecord.free_default(self.user.user_id, now)

        if self.cache is not None:
            self.cache.set(record)
        return record

    def check_access(self, feature: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        record = self.load_subscription(now)
        return check_access(record, feature, self.user.is_admin, now)

    async def cancel_subscription(self) -> SubscriptionRecord:
        """
        Cancel at the end of the current period. Never immediate.

        The provider's updated subscription is written through the same
        upsert path the webhooks use, so the row is already in its grace
        period when the customer.subscription.updated webhook arrives.

        Raises:
            BillingActionError: No live subscription (404), provider rejected
                the request (400), or provider unavailable (503)
        """
        record = self.store.get_by_user_id(self.user.user_id)
        if (
            record is None
            or not record.stripe_subscription_id
            or record.status.value in TERMINAL_STATUSES
        ):
            raise BillingActionError(NO_SUBSCRIPTION_MESSAGE, status_code=404)

        try:
            subscription = await self.provider_client.cancel_at_period_end(record.stripe_subscription_id)
        except ProviderAPIError as e:
            if e.retryable:
                logger.error("Provider unavailable for cancel at period end", extra={
                    "user_id": self.user.user_id,
                    "provider_subscription_id": record.stripe_subscription_id,
                    "provider_status": e.provider_status,
                })
                raise BillingActionError(CANCEL_UNAVAILABLE_MESSAGE, status_code=503) from e
            logger.warning("Cancel at period end rejected by provider", extra={
                "user_id": self.user.user_id,
                "provider_subscription_id": record.stripe_subscription_id,
                "provider_status": e.provider_status,
            })
            raise BillingActionError(CANCEL_FAILED_MESSAGE) from e

        values = build_record_values(subscription, self.user.user_id, now=datetime.now(timezone.utc))
        self.store.upsert_subscription(values)
        if self.cache is not None:
            self.cache.invalidate(self.user.user_id)

        logger.info("Subscription set to cancel at period end", extra={
            "user_id": self.user.user_id,
            "provider_subscription_id": subscription.id,
        })
        return self.store.get_by_user_id(self.user.user_id)

    async def open_billing_portal(self, return_url: str) -> str:
        """
        Provider-hosted billing management URL.

        Raises:
            BillingActionError: No customer on file, portal not configured, or provider failure
        """
        record = self.store.get_by_user_id(self.user.user_id)
        if record is None or not record.stripe_customer_id:
            raise BillingActionError("No billing account found. Subscribe to a plan first.", status_code=404)

        try:
            return await self.provider_client.create_billing_portal_session(record.stripe_customer_id, return_url)
        except ProviderAPIError as e:
            logger.error("Billing portal session failed", extra={
                "user_id": self.user.user_id,
                "provider_status": e.provider_status,
                "provider_message": e.provider_message,
            })
            if e.provider_message and "No configuration provided" in e.provider_message:
                raise BillingActionError(PORTAL_UNAVAILABLE_MESSAGE, status_code=503) from e
            if e.retryable:
                raise BillingActionError(PORTAL_UNAVAILABLE_MESSAGE, status_code=503) from e
            raise BillingActionError(PORTAL_FAILED_MESSAGE, status_code=502) from e
