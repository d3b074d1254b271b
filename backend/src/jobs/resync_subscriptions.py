"""
Subscription resync and grace-period expiry.

Two maintenance tasks for when webhooks alone are not enough:

1. Manual resync: given a user id and email, list the Stripe customers with
   that email and their subscriptions, and write every active or trialing
   one through the same upsert the webhooks use. Used when webhook
   deliveries were lost.
2. Expiry sweep: rows in active_until_period_end whose end_date has passed
   become expired in one UPDATE.

Usage:
    python -m src.jobs.resync_subscriptions expire
    python -m src.jobs.resync_subscriptions resync --user-id <id> --email <email>
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from src.billing.errors import BillingError
from src.services.subscription_cache import SubscriptionCache
from src.services.subscription_reconciler import SubscriptionReconciler
from src.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

RESYNC_PROVIDER_STATUSES = frozenset({"active", "trialing"})


class SubscriptionResyncJob:
    """
    Repairs local subscription rows from the provider's view.

    Handles:
    - Resync of one user's subscriptions by email
    - Expiry of grace periods that have ended
    """

    def __init__(
        self,
        db_session: Session,
        provider_client=None,
        cache: Optional[SubscriptionCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = SubscriptionStore(db_session)
        self.provider_client = provider_client
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.reconciler = SubscriptionReconciler(
            self.store, provider_client=provider_client, cache=cache, clock=self.clock
        )

    async def resync_user(self, user_id: str, email: str) -> dict:
        """
        Write the user's live provider subscriptions to the local row.

        Returns:
            Summary with customers/subscriptions seen, rows updated and errors
        """
        logger.info("Starting subscription resync", extra={"user_id": user_id})

        results = {
            "started_at": self.clock().isoformat(),
            "user_id": user_id,
            "customers_found": 0,
            "subscriptions_checked": 0,
            "subscriptions_updated": 0,
            "errors": [],
        }

        customers = await self.provider_client.list_customers_by_email(email)
        results["customers_found"] = len(customers)
        if not customers:
            results["errors"].append("No Stripe customer found for this email")
            return results

        for customer in customers:
            customer_id = customer.get("id")
            try:
                subscriptions = await self.provider_client.list_subscriptions(customer_id)
            except BillingError as e:
                logger.error("Failed to list subscriptions for customer", extra={
                    "user_id": user_id,
                    "customer_id": customer_id,
                    "error": e.message,
                })
                results["errors"].append(f"{customer_id}: {e.message}")
                continue

            for subscription in subscriptions:
                results["subscriptions_checked"] += 1
                if subscription.status not in RESYNC_PROVIDER_STATUSES:
                    continue
                try:
                    self.reconciler.upsert_from_provider_object(subscription, user_id)
                    results["subscriptions_updated"] += 1
                except BillingError as e:
                    logger.error("Failed to resync subscription", extra={
                        "user_id": user_id,
                        "provider_subscription_id": subscription.id,
                        "error": e.message,
                    })
                    results["errors"].append(f"{subscription.id}: {e.message}")

        results["completed_at"] = self.clock().isoformat()
        logger.info("Subscription resync completed", extra=results)
        return results

    def expire_grace_periods(self) -> int:
        """Expire rows whose cancel-at-period-end grace period has ended."""
        expired = self.store.expire_lapsed(self.clock())
        if expired:
            logger.info("Expired subscriptions past period end", extra={"count": expired})
        return expired


def main(argv=None) -> int:
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Subscription maintenance tasks")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("expire", help="Expire ended grace periods")
    resync = subparsers.add_parser("resync", help="Resync one user's subscriptions from Stripe")
    resync.add_argument("--user-id", required=True)
    resync.add_argument("--email", required=True)
    args = parser.parse_args(argv)

    from src.config.settings import BillingSettings, ConfigurationError
    from src.database.session import build_engine, build_session_factory
    from src.integrations.stripe.billing_client import StripeBillingClient

    try:
        settings = BillingSettings.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    engine = build_engine(settings.database_url)
    session = build_session_factory(engine)()
    cache = SubscriptionCache(settings.redis_url, ttl_seconds=settings.subscription_cache_ttl_seconds)

    try:
        if args.command == "expire":
            count = SubscriptionResyncJob(session, cache=cache).expire_grace_periods()
            print(json.dumps({"expired": count}))
            return 0

        async def _resync() -> dict:
            async with StripeBillingClient(
                settings.stripe_secret_key,
                api_base=settings.stripe_api_base,
                timeout=settings.stripe_api_timeout_sec,
            ) as client:
                job = SubscriptionResyncJob(session, provider_client=client, cache=cache)
                return await job.resync_user(args.user_id, args.email)

        results = asyncio.run(_resync())
        print(json.dumps(results))
        return 0 if not results["errors"] else 1
    finally:
        session.close()
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
