"""
Billing event envelope parsing.

Decodes an authenticated webhook body into a typed event. Each handled
event type has one concrete shape; everything else becomes UnknownEvent and
is acknowledged without processing.

Provider objects are validated here, at the boundary, so handlers never
reach into untyped dicts.
"""

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.billing.errors import MalformedPayloadError
from src.config.billing_policy import CORRELATION_METADATA_KEY

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """Provider event types this service handles."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def _expandable_id(value: Any) -> Any:
    """Provider ids may arrive expanded as objects; keep only the id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _metadata_user_id(metadata: Dict[str, Any]) -> Optional[str]:
    value = metadata.get(CORRELATION_METADATA_KEY)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PriceRef(_ProviderModel):
    id: Optional[str] = None


class SubscriptionItem(_ProviderModel):
    price: Optional[PriceRef] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(_ProviderModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class ProviderSubscription(_ProviderModel):
    """Subscription object as sent by the provider."""

    id: str
    status: str
    customer: Optional[str] = None
    created: Optional[int] = None
    start_date: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def expand_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("metadata", mode="before")
    @classmethod
    def none_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def correlation_user_id(self) -> Optional[str]:
        return _metadata_user_id(self.metadata)

    @property
    def price_id(self) -> Optional[str]:
        for item in self.items.data:
            if item.price and item.price.id:
                return item.price.id
        return None

    @property
    def period_end(self) -> Optional[int]:
        """Current period end; newer API versions carry it per item."""
        if self.current_period_end is not None:
            return self.current_period_end
        ends = [item.current_period_end for item in self.items.data if item.current_period_end is not None]
        return max(ends) if ends else None

    @property
    def started_at(self) -> Optional[int]:
        return self.created if self.created is not None else self.start_date


class CheckoutSession(_ProviderModel):
    """Completed checkout session."""

    id: str
    mode: Optional[str] = None
    customer: Optional[str] = None
    client_reference_id: Optional[str] = None
    subscription: Optional[Union[str, ProviderSubscription]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def expand_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def none_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def correlation_user_id(self) -> Optional[str]:
        user_id = _metadata_user_id(self.metadata)
        if user_id:
            return user_id
        if self.client_reference_id and self.client_reference_id.strip():
            return self.client_reference_id.strip()
        return None

    @property
    def subscription_id(self) -> Optional[str]:
        if isinstance(self.subscription, ProviderSubscription):
            return self.subscription.id
        return self.subscription or None

    @property
    def embedded_subscription(self) -> Optional[ProviderSubscription]:
        if isinstance(self.subscription, ProviderSubscription):
            return self.subscription
        return None


class _InvoiceSubscriptionDetails(_ProviderModel):
    subscription: Optional[str] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def expand_subscription(cls, value: Any) -> Any:
        return _expandable_id(value)


class _InvoiceParent(_ProviderModel):
    subscription_details: Optional[_InvoiceSubscriptionDetails] = None


class Invoice(_ProviderModel):
    """Invoice object from invoice.payment_* events."""

    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    attempt_count: int = 0
    billing_reason: Optional[str] = None
    parent: Optional[_InvoiceParent] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def expand_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("attempt_count", mode="before")
    @classmethod
    def none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class _EventData(BaseModel):
    object: Dict[str, Any]


class _Envelope(BaseModel):
    id: str
    type: str
    created: Optional[int] = None
    data: _EventData


@dataclass(frozen=True)
class InboundEvent:
    """Fields common to every event. Ephemeral; never persisted."""

    id: str
    type: str
    raw_payload: Dict[str, Any]
    received_at: datetime
    correlation_user_id: Optional[str]


@dataclass(frozen=True)
class CheckoutCompletedEvent(InboundEvent):
    session: CheckoutSession


@dataclass(frozen=True)
class SubscriptionEvent(InboundEvent):
    subscription: ProviderSubscription


@dataclass(frozen=True)
class InvoiceEvent(InboundEvent):
    invoice: Invoice


@dataclass(frozen=True)
class UnknownEvent(InboundEvent):
    pass


BillingEvent = Union[CheckoutCompletedEvent, SubscriptionEvent, InvoiceEvent, UnknownEvent]

_SUBSCRIPTION_TYPES = frozenset({
    EventType.SUBSCRIPTION_CREATED.value,
    EventType.SUBSCRIPTION_UPDATED.value,
    EventType.SUBSCRIPTION_DELETED.value,
})
_INVOICE_TYPES = frozenset({
    EventType.INVOICE_PAYMENT_SUCCEEDED.value,
    EventType.INVOICE_PAYMENT_FAILED.value,
})


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid payload"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}" if location else first.get("msg", "invalid")


def parse_event(raw_body: bytes, *, received_at: Optional[datetime] = None) -> BillingEvent:
    """
    Decode a webhook body into a typed billing event.

    Args:
        raw_body: Authenticated request body
        received_at: Receipt time (defaults to now, UTC)

    Returns:
        One of CheckoutCompletedEvent, SubscriptionEvent, InvoiceEvent, UnknownEvent

    Raises:
        MalformedPayloadError: Invalid JSON, missing id/type/data.object, or a
            handled type whose object lacks required fields
    """
    received_at = received_at or datetime.now(timezone.utc)

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayloadError(f"Invalid JSON payload: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedPayloadError("Event payload must be a JSON object")

    try:
        envelope = _Envelope.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid event envelope: {_first_error(e)}") from e

    obj = envelope.data.object
    common = {
        "id": envelope.id,
        "type": envelope.type,
        "raw_payload": payload,
        "received_at": received_at,
    }

    try:
        if envelope.type == EventType.CHECKOUT_SESSION_COMPLETED.value:
            session = CheckoutSession.model_validate(obj)
            return CheckoutCompletedEvent(
                correlation_user_id=session.correlation_user_id, session=session, **common
            )

        if envelope.type in _SUBSCRIPTION_TYPES:
            subscription = ProviderSubscription.model_validate(obj)
            return SubscriptionEvent(
                correlation_user_id=subscription.correlation_user_id, subscription=subscription, **common
            )

        if envelope.type in _INVOICE_TYPES:
            invoice = Invoice.model_validate(obj)
            return InvoiceEvent(correlation_user_id=None, invoice=invoice, **common)

    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid {envelope.type} object: {_first_error(e)}") from e

    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    return UnknownEvent(correlation_user_id=_metadata_user_id(metadata), **common)
