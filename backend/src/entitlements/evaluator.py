"""
Entitlement evaluation.

Answers "may this user use feature X right now" from a subscription record.
Pure and deterministic: no I/O, the current time is passed in.

Rules, first match wins:
1. Admins may use everything
2. Features outside PREMIUM_FEATURES are free
3. Record flagged cancel_at_period_end with an end_date: allowed until
   end_date while status is active or active_until_period_end
4. Otherwise: allowed iff status is active and tier is premium
5. Anything else (no record, free tier, expired) is denied
"""

from datetime import datetime
from typing import AbstractSet, Optional

from src.config.billing_policy import PREMIUM_FEATURES
from src.models.subscription import SubscriptionRecord, SubscriptionStatus, SubscriptionTier, as_utc

GRACE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.ACTIVE_UNTIL_PERIOD_END,
})


def is_premium_feature(feature: str, premium_features: AbstractSet[str] = PREMIUM_FEATURES) -> bool:
    return feature in premium_features


def check_access(
    record: Optional[SubscriptionRecord],
    feature: str,
    is_admin: bool,
    now: datetime,
    premium_features: AbstractSet[str] = PREMIUM_FEATURES,
) -> bool:
    if is_admin:
        return True

    if not is_premium_feature(feature, premium_features):
        return True

    if record is None:
        return False

    if record.cancel_at_period_end and record.end_date is not None:
        return as_utc(now) < as_utc(record.end_date) and record.status in GRACE_STATUSES

    return record.status == SubscriptionStatus.ACTIVE and record.tier == SubscriptionTier.PREMIUM
