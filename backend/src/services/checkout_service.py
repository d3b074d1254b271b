"""
Checkout session bridge.

Creates a Stripe checkout session that carries the local user id in its
metadata. The user id is what lets later webhooks find the local row.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from src.billing.errors import BillingActionError, ProviderAPIError
from src.platform.user_context import UserContext
from src.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

SUCCESS_PATH = "/subscription/success?session_id={CHECKOUT_SESSION_ID}"
CANCEL_PATH = "/subscription"

CHECKOUT_FAILED_MESSAGE = "Unable to start checkout. Please try again or contact support."
CHECKOUT_UNAVAILABLE_MESSAGE = "Checkout is temporarily unavailable. Please try again in a few minutes."


@dataclass
class CheckoutSessionResult:
    session_id: str
    url: Optional[str] = None


class CheckoutSessionBridge:
    """Starts hosted checkout for a signed-in user."""

    def __init__(self, store: SubscriptionStore, provider_client, default_origin: str):
        self.store = store
        self.provider_client = provider_client
        self.default_origin = default_origin.rstrip("/")

    async def create_checkout_session(
        self,
        user: UserContext,
        price_id: str,
        origin: Optional[str] = None,
    ) -> CheckoutSessionResult:
        """
        Create a subscription checkout session for the user.

        Reuses the stored provider customer, or creates one and records it
        on a {free, none} placeholder row.

        Raises:
            BillingActionError: Missing price, provider rejection (400) or
                provider unavailable (503)
            TransientStoreError: Storage failure
        """
        if not price_id or not price_id.strip():
            raise BillingActionError("A price must be selected to start checkout")

        base = (origin or self.default_origin).rstrip("/")
        existing = self.store.get_by_user_id(user.user_id)
        customer_id = existing.stripe_customer_id if existing else None

        try:
            if not customer_id:
                customer_id = await self.provider_client.create_customer(user.email, user.user_id)
                self.store.ensure_customer_placeholder(user.user_id, customer_id)

            session = await self.provider_client.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id.strip(),
                user_id=user.user_id,
                success_url=f"{base}{SUCCESS_PATH}",
                cancel_url=f"{base}{CANCEL_PATH}",
            )
        except ProviderAPIError as e:
            if e.retryable:
                logger.error("Provider unavailable for checkout", extra={
                    "user_id": user.user_id,
                    "provider_status": e.provider_status,
                })
                raise BillingActionError(CHECKOUT_UNAVAILABLE_MESSAGE, status_code=503) from e
            logger.warning("Checkout session rejected by provider", extra={
                "user_id": user.user_id,
                "provider_status": e.provider_status,
                "provider_message": e.provider_message,
            })
            raise BillingActionError(CHECKOUT_FAILED_MESSAGE) from e

        logger.info("Checkout session created", extra={
            "user_id": user.user_id,
            "session_id": session.session_id,
        })
        return CheckoutSessionResult(session_id=session.session_id, url=session.url)
