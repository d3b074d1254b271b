"""
Subscription model: the single authoritative entitlement row per user.

Lifecycle:
1. Optional placeholder row (tier=free, status=none) written at checkout so the
   provider customer id is remembered
2. First subscription-created-class webhook upserts the premium row
3. Every later updated/invoice webhook for the same stripe_subscription_id
   mutates the row in place
4. customer.subscription.deleted soft-deletes (status=canceled, end_date=now,
   deleted_at=now)
5. invoice.payment_failed may escalate to canceled; a later
   invoice.payment_succeeded restores such a row, but never a deleted one

Rows are never hard-deleted.

CONSTRAINTS:
- user_id is unique (one row per user)
- stripe_subscription_id is unique (at most one row per provider subscription)
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, String, func

from src.db_base import Base


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SubscriptionTier(str, enum.Enum):
    """Product tier."""
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, enum.Enum):
    """Canonical local subscription status."""
    NONE = "none"
    ACTIVE = "active"
    ACTIVE_UNTIL_PERIOD_END = "active_until_period_end"  # grace period after cancel request
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


# Statuses that mean the subscription no longer grants access on its own
TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.EXPIRED.value,
})

# Statuses a row can be in while the user still holds no live subscription
ADOPTABLE_STATUSES = frozenset({
    SubscriptionStatus.NONE.value,
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.EXPIRED.value,
})


class Subscription(Base):
    """
    Local record of a user's subscription entitlement.

    Status values are stored as plain strings so the provider's vocabulary can
    be compared against them without enum coercion.
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Internal UUID primary key"
    )

    user_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Local user id (correlation id threaded through provider metadata)"
    )

    tier = Column(
        String(50),
        nullable=False,
        default=SubscriptionTier.FREE.value,
    )

    status = Column(
        String(50),
        nullable=False,
        default=SubscriptionStatus.NONE.value,
    )

    start_date = Column(DateTime(timezone=True), nullable=True)

    end_date = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Current billing period end, or final expiry once canceled"
    )

    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)

    stripe_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Provider subscription id (upsert conflict key)"
    )

    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    deleted_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set when the provider deleted the subscription; never set by payment failures"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, tier={self.tier}, "
            f"status={self.status}, stripe_subscription_id={self.stripe_subscription_id})>"
        )

    def to_record(self) -> "SubscriptionRecord":
        return SubscriptionRecord(
            user_id=self.user_id,
            tier=SubscriptionTier(self.tier),
            status=SubscriptionStatus(self.status),
            start_date=as_utc(self.start_date),
            end_date=as_utc(self.end_date),
            stripe_customer_id=self.stripe_customer_id,
            stripe_price_id=self.stripe_price_id,
            stripe_subscription_id=self.stripe_subscription_id,
            cancel_at_period_end=bool(self.cancel_at_period_end),
        )


@dataclass(frozen=True)
class SubscriptionRecord:
    """Detached, immutable view of a subscription row."""

    user_id: Optional[str]
    tier: SubscriptionTier
    status: SubscriptionStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False

    @classmethod
    def free_default(cls, user_id: Optional[str] = None, now: Optional[datetime] = None) -> "SubscriptionRecord":
        """Record synthesized for users with no stored row."""
        return cls(
            user_id=user_id,
            tier=SubscriptionTier.FREE,
            status=SubscriptionStatus.NONE,
            start_date=now,
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_price_id": self.stripe_price_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "cancel_at_period_end": self.cancel_at_period_end,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "SubscriptionRecord":
        return cls(
            user_id=raw.get("user_id"),
            tier=SubscriptionTier(raw["tier"]),
            status=SubscriptionStatus(raw["status"]),
            start_date=datetime.fromisoformat(raw["start_date"]) if raw.get("start_date") else None,
            end_date=datetime.fromisoformat(raw["end_date"]) if raw.get("end_date") else None,
            stripe_customer_id=raw.get("stripe_customer_id"),
            stripe_price_id=raw.get("stripe_price_id"),
            stripe_subscription_id=raw.get("stripe_subscription_id"),
            cancel_at_period_end=bool(raw.get("cancel_at_period_end", False)),
        )
