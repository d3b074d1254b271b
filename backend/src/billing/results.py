"""Explicit outcome of processing one billing event."""

import enum
from dataclasses import dataclass
from typing import Optional


class HandlerOutcome(str, enum.Enum):
    APPLIED = "applied"        # state written
    NOOP = "noop"              # nothing to do (unknown type, absent row)
    TERMINAL = "terminal"      # cannot ever succeed; acknowledge and log
    RETRYABLE = "retryable"    # valid event, transient failure; provider should redeliver


@dataclass(frozen=True)
class HandlerResult:
    outcome: HandlerOutcome
    reason: Optional[str] = None
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def should_acknowledge(self) -> bool:
        """True when the webhook should answer 200."""
        return self.outcome is not HandlerOutcome.RETRYABLE

    @classmethod
    def applied(cls, user_id: Optional[str] = None, subscription_id: Optional[str] = None) -> "HandlerResult":
        return cls(HandlerOutcome.APPLIED, user_id=user_id, subscription_id=subscription_id)

    @classmethod
    def noop(cls, reason: str, subscription_id: Optional[str] = None) -> "HandlerResult":
        return cls(HandlerOutcome.NOOP, reason=reason, subscription_id=subscription_id)

    @classmethod
    def terminal(cls, reason: str, subscription_id: Optional[str] = None) -> "HandlerResult":
        return cls(HandlerOutcome.TERMINAL, reason=reason, subscription_id=subscription_id)

    @classmethod
    def retryable(cls, reason: str, subscription_id: Optional[str] = None) -> "HandlerResult":
        return cls(HandlerOutcome.RETRYABLE, reason=reason, subscription_id=subscription_id)
