"""
Fixed billing policy values.

These are product decisions, not deployment settings, so they live in code.
"""

from typing import FrozenSet

# Features gated behind the premium tier. Anything not listed is free.
PREMIUM_FEATURES: FrozenSet[str] = frozenset({
    "ai-chat",
    "wallet-simulator",
    "node-simulator",
    "development",
    "premium-courses",
})

# Provider attempt_count at which a failing invoice cancels the subscription
PAYMENT_FAILURE_CANCEL_THRESHOLD = 3

# Metadata key carrying the local user id through provider objects
CORRELATION_METADATA_KEY = "user_id"
