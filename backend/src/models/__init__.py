"""
Database models for subscriptions and entitlements.
"""

from src.models.subscription import (
    ADOPTABLE_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)

__all__ = [
    "ADOPTABLE_STATUSES",
    "TERMINAL_STATUSES",
    "Subscription",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionTier",
]
