"""
Event routing.

Maps each handled event type to exactly one reconciler handler. Handlers
never call each other. Errors raised by a handler are turned into a
HandlerResult here, so the retryable/terminal decision is made once per
error class instead of inside every handler.
"""

import enum
import logging
from typing import Awaitable, Callable, Dict

from src.billing.errors import BillingError
from src.billing.events import BillingEvent, EventType
from src.billing.results import HandlerOutcome, HandlerResult

logger = logging.getLogger(__name__)


class EventRoute(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


ROUTES: Dict[str, EventRoute] = {
    EventType.CHECKOUT_SESSION_COMPLETED.value: EventRoute.CHECKOUT_COMPLETED,
    EventType.SUBSCRIPTION_CREATED.value: EventRoute.SUBSCRIPTION_CREATED,
    EventType.SUBSCRIPTION_UPDATED.value: EventRoute.SUBSCRIPTION_UPDATED,
    EventType.SUBSCRIPTION_DELETED.value: EventRoute.SUBSCRIPTION_DELETED,
    EventType.INVOICE_PAYMENT_SUCCEEDED.value: EventRoute.PAYMENT_SUCCEEDED,
    EventType.INVOICE_PAYMENT_FAILED.value: EventRoute.PAYMENT_FAILED,
}


def route_for(event_type: str) -> EventRoute:
    return ROUTES.get(event_type, EventRoute.UNKNOWN)


Handler = Callable[[BillingEvent], Awaitable[HandlerResult]]


class EventRouter:
    """
    Dispatches parsed events to a SubscriptionReconciler.

    The reconciler is duck-typed: it must expose one async handler per
    route (handle_checkout_completed, handle_subscription_created, ...).
    """

    def __init__(self, reconciler):
        self.reconciler = reconciler
        self._handlers: Dict[EventRoute, Handler] = {
            EventRoute.CHECKOUT_COMPLETED: reconciler.handle_checkout_completed,
            EventRoute.SUBSCRIPTION_CREATED: reconciler.handle_subscription_created,
            EventRoute.SUBSCRIPTION_UPDATED: reconciler.handle_subscription_updated,
            EventRoute.SUBSCRIPTION_DELETED: reconciler.handle_subscription_deleted,
            EventRoute.PAYMENT_SUCCEEDED: reconciler.handle_payment_succeeded,
            EventRoute.PAYMENT_FAILED: reconciler.handle_payment_failed,
        }

    async def dispatch(self, event: BillingEvent) -> HandlerResult:
        """
        Run the handler for an event and return its outcome.

        Unknown event types are acknowledged as no-ops. BillingError
        subclasses become TERMINAL or RETRYABLE results according to their
        retryable flag; any other exception propagates.
        """
        route = route_for(event.type)
        log_extra = {"event_id": event.id, "event_type": event.type, "route": route.value}

        if route is EventRoute.UNKNOWN:
            logger.info("Ignoring unhandled billing event type", extra=log_extra)
            return HandlerResult.noop(f"Unhandled event type: {event.type}")

        try:
            result = await self._handlers[route](event)
        except BillingError as e:
            if e.retryable:
                result = HandlerResult.retryable(e.message)
            else:
                result = HandlerResult.terminal(e.message)
            logger.log(
                logging.ERROR if e.retryable else logging.WARNING,
                "Billing event handler failed",
                extra={**log_extra, "error_code": e.code, "error": e.message, "retryable": e.retryable},
            )
            return result

        if result.outcome is HandlerOutcome.TERMINAL:
            logger.warning("Billing event acknowledged without processing", extra={
                **log_extra, "reason": result.reason,
            })
        else:
            logger.info("Billing event processed", extra={
                **log_extra,
                "outcome": result.outcome.value,
                "user_id": result.user_id,
                "provider_subscription_id": result.subscription_id,
            })
        return result
