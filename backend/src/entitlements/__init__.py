"""
Entitlement checks for premium features.

check_access is the single decision point; callers load the subscription
record and pass the current time.
"""

from src.entitlements.evaluator import GRACE_STATUSES, check_access, is_premium_feature

__all__ = [
    "GRACE_STATUSES",
    "check_access",
    "is_premium_feature",
]
