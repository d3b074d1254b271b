"""
Stripe billing webhook endpoint.

SECURITY:
- Every request MUST carry a valid signature over the raw body
- No user authentication (calls come from the payment provider)
- user_id is taken from provider metadata written at checkout, never from headers

Responses:
- 200 {"received": true}: applied, intentional no-op, or terminal (logged)
- 400 {"error": ...}: signature or payload failure
- 503 {"error": ...}: retryable failure; the provider redelivers
"""

import logging

from fastapi import APIRouter, Depends, Request

from src.api.dependencies.billing import get_reconciler
from src.billing.errors import SignatureInvalidError
from src.billing.events import parse_event
from src.billing.router import EventRouter
from src.billing.signature import verify_signature
from src.platform.errors import ServiceUnavailableError
from src.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADERS = ("Stripe-Signature", "Signature")


async def verify_webhook(request: Request) -> bytes:
    """
    Verify the webhook signature and return the raw body.

    Raises:
        SignatureInvalidError: Missing, malformed, stale or mismatched signature
    """
    body = await request.body()
    settings = request.app.state.settings

    header = next((request.headers[name] for name in SIGNATURE_HEADERS if name in request.headers), None)
    if not verify_signature(
        body,
        header,
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    ):
        logger.warning("Invalid webhook signature", extra={"path": request.url.path})
        raise SignatureInvalidError()

    return body


@router.post("/billing")
async def handle_billing_webhook(
    request: Request,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Receive one billing event and reconcile it into the subscription store."""
    body = await verify_webhook(request)
    event = parse_event(body)

    logger.info("Received billing webhook", extra={
        "event_id": event.id,
        "event_type": event.type,
        "user_id": event.correlation_user_id,
    })

    result = await EventRouter(reconciler).dispatch(event)

    if not result.should_acknowledge:
        raise ServiceUnavailableError(result.reason or "Temporary failure processing event")

    return {"received": True}
