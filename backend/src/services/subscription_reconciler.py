"""
Subscription reconciler.

Turns verified, parsed billing events into subscription row writes. One
handler per event route; handlers never call each other.

Every write goes through SubscriptionStore as a single atomic statement, so
duplicated or concurrently delivered events converge on the same row.

Error policy (applied by EventRouter):
- MissingCorrelationError, ConflictingRecordError, malformed provider data
  -> terminal, acknowledged and logged
- TransientStoreError, ProviderAPIError on 5xx/429/network -> retryable (503)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from src.billing.errors import MalformedPayloadError, MissingCorrelationError, ProviderAPIError
from src.billing.events import (
    CheckoutCompletedEvent,
    InvoiceEvent,
    ProviderSubscription,
    SubscriptionEvent,
)
from src.billing.results import HandlerResult
from src.config.billing_policy import PAYMENT_FAILURE_CANCEL_THRESHOLD
from src.models.subscription import SubscriptionStatus, SubscriptionTier
from src.services.subscription_cache import SubscriptionCache
from src.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


# Provider status vocabulary -> local status
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "expired": SubscriptionStatus.EXPIRED,
}


def derive_status(
    provider_status: str,
    cancel_at_period_end: bool,
    has_period_end: bool = True,
    period_ended: bool = False,
) -> SubscriptionStatus:
    """
    Canonical local status for a provider subscription.

    An active subscription flagged to cancel at period end is in its grace
    period (active_until_period_end), never canceled. The grace status needs
    a period end to expire at; without one the row stays active. A grace
    period whose end has already passed is expired.

    Raises:
        MalformedPayloadError: Unknown provider status
    """
    status = PROVIDER_STATUS_MAP.get(provider_status)
    if status is None:
        raise MalformedPayloadError(f"Unknown subscription status: {provider_status!r}")
    if cancel_at_period_end and status is SubscriptionStatus.ACTIVE and has_period_end:
        if period_ended:
            return SubscriptionStatus.EXPIRED
        return SubscriptionStatus.ACTIVE_UNTIL_PERIOD_END
    return status


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def build_record_values(
    subscription: ProviderSubscription,
    user_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Row values for a provider subscription.

    Pure function of the provider object and now, so re-applying the same
    event writes identical values until its period end passes.
    """
    period_end = subscription.period_end
    period_ended = now is not None and period_end is not None and _timestamp(period_end) <= now
    return {
        "user_id": user_id,
        "tier": SubscriptionTier.PREMIUM.value,
        "status": derive_status(
            subscription.status,
            subscription.cancel_at_period_end,
            has_period_end=period_end is not None,
            period_ended=period_ended,
        ).value,
        "start_date": _timestamp(subscription.started_at),
        "end_date": _timestamp(period_end),
        "stripe_customer_id": subscription.customer,
        "stripe_price_id": subscription.price_id,
        "stripe_subscription_id": subscription.id,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


class SubscriptionReconciler:
    """
    Applies billing events to the subscription store.

    Args:
        store: SubscriptionStore bound to the request's session
        provider_client: StripeBillingClient, used to fetch the subscription
            behind a checkout session when it is not embedded
        cache: Optional SubscriptionCache invalidated after writes
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: SubscriptionStore,
        provider_client=None,
        cache: Optional[SubscriptionCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider_client = provider_client
        self.cache = cache
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # --------------------------------------------------------------- handlers

    async def handle_checkout_completed(self, event: CheckoutCompletedEvent) -> HandlerResult:
        session = event.session
        user_id = event.correlation_user_id
        if not user_id:
            raise MissingCorrelationError("checkout session", session.id)

        subscription_id = session.subscription_id
        if not subscription_id:
            return HandlerResult.noop("Checkout session has no subscription")

        subscription = session.embedded_subscription
        if subscription is None:
            if self.provider_client is None:
                raise ProviderAPIError("Stripe client not configured")
            subscription = await self.provider_client.retrieve_subscription(subscription_id)

        return self.upsert_from_provider_object(subscription, user_id)

    async def handle_subscription_created(self, event: SubscriptionEvent) -> HandlerResult:
        return self._upsert_subscription_event(event)

    async def handle_subscription_updated(self, event: SubscriptionEvent) -> HandlerResult:
        return self._upsert_subscription_event(event)

    async def handle_subscription_deleted(self, event: SubscriptionEvent) -> HandlerResult:
        subscription_id = event.subscription.id
        if not self.store.mark_deleted(subscription_id, self.clock()):
            return HandlerResult.noop("No local subscription to delete", subscription_id=subscription_id)

        user_id = self._invalidate_for(subscription_id, event.correlation_user_id)
        return HandlerResult.applied(user_id=user_id, subscription_id=subscription_id)

    async def handle_payment_succeeded(self, event: InvoiceEvent) -> HandlerResult:
        subscription_id = event.invoice.subscription_id
        if not subscription_id:
            return HandlerResult.noop("Invoice is not attached to a subscription")

        if not self.store.mark_payment_succeeded(subscription_id):
            return HandlerResult.noop("No live local subscription for invoice", subscription_id=subscription_id)

        user_id = self._invalidate_for(subscription_id)
        return HandlerResult.applied(user_id=user_id, subscription_id=subscription_id)

    async def handle_payment_failed(self, event: InvoiceEvent) -> HandlerResult:
        invoice = event.invoice
        subscription_id = invoice.subscription_id
        if not subscription_id:
            return HandlerResult.noop("Invoice is not attached to a subscription")

        if invoice.attempt_count >= PAYMENT_FAILURE_CANCEL_THRESHOLD:
            status = SubscriptionStatus.CANCELED
        else:
            status = SubscriptionStatus.PAST_DUE

        if not self.store.mark_payment_failed(subscription_id, status):
            return HandlerResult.noop("No live local subscription for invoice", subscription_id=subscription_id)

        logger.info("Payment failure recorded", extra={
            "provider_subscription_id": subscription_id,
            "attempt_count": invoice.attempt_count,
            "status": status.value,
        })
        user_id = self._invalidate_for(subscription_id)
        return HandlerResult.applied(user_id=user_id, subscription_id=subscription_id)

    # ----------------------------------------------------------------- upsert

    def upsert_from_provider_object(self, subscription: ProviderSubscription, user_id: str) -> HandlerResult:
        """
        Write a provider subscription to the user's row in one atomic upsert.

        Raises:
            MalformedPayloadError: Unknown provider status
            ConflictingRecordError: Uniqueness conflict with another row
            TransientStoreError: Storage failure
        """
        values = build_record_values(subscription, user_id, now=self.clock())
        self.store.upsert_subscription(values)
        self._invalidate(user_id)
        return HandlerResult.applied(user_id=user_id, subscription_id=subscription.id)

    def _upsert_subscription_event(self, event: SubscriptionEvent) -> HandlerResult:
        user_id = event.correlation_user_id
        if not user_id:
            raise MissingCorrelationError("subscription", event.subscription.id)
        return self.upsert_from_provider_object(event.subscription, user_id)

    # ------------------------------------------------------------------ cache

    def _invalidate(self, user_id: Optional[str]) -> None:
        if self.cache is not None and user_id:
            self.cache.invalidate(user_id)

    def _invalidate_for(self, subscription_id: str, user_id: Optional[str] = None) -> Optional[str]:
        """Invalidate the cached record for the row holding subscription_id."""
        if user_id is None:
            record = self.store.get_by_subscription_id(subscription_id)
            user_id = record.user_id if record else None
        self._invalidate(user_id)
        return user_id
