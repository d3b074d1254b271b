"""
Billing API routes for the signed-in user's subscription.

All routes require a bearer token. user_id is NEVER accepted from the
request body.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from src.api.dependencies.billing import get_checkout_bridge, get_client_entitlement_store
from src.platform.user_context import UserContext, get_user_context
from src.services.checkout_service import CheckoutSessionBridge
from src.services.client_entitlement_store import ClientEntitlementStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


# Request/Response Models

class SubscriptionResponse(BaseModel):
    """Current subscription state."""
    tier: str
    status: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    stripe_price_id: Optional[str] = None


class AccessResponse(BaseModel):
    feature: str
    allowed: bool


class CreateCheckoutRequest(BaseModel):
    """Request to start a hosted checkout."""
    price_id: str = Field(..., min_length=1, description="Provider price to subscribe to")


class CreateCheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = Field(None, description="Where the portal sends the user back to")


class PortalResponse(BaseModel):
    url: str


def _subscription_response(record) -> SubscriptionResponse:
    return SubscriptionResponse(
        tier=record.tier.value,
        status=record.status.value,
        start_date=record.start_date,
        end_date=record.end_date,
        cancel_at_period_end=record.cancel_at_period_end,
        stripe_price_id=record.stripe_price_id,
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(entitlements: ClientEntitlementStore = Depends(get_client_entitlement_store)):
    return _subscription_response(entitlements.load_subscription())


@router.get("/access/{feature}", response_model=AccessResponse)
async def check_feature_access(
    feature: str,
    entitlements: ClientEntitlementStore = Depends(get_client_entitlement_store),
):
    return AccessResponse(feature=feature, allowed=entitlements.check_access(feature))


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(entitlements: ClientEntitlementStore = Depends(get_client_entitlement_store)):
    """Cancel at the end of the current billing period."""
    record = await entitlements.cancel_subscription()
    return _subscription_response(record)


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    request: Request,
    body: Optional[PortalRequest] = None,
    entitlements: ClientEntitlementStore = Depends(get_client_entitlement_store),
):
    return_url = (body.return_url if body else None) or f"{request.app.state.settings.app_base_url}/account"
    url = await entitlements.open_billing_portal(return_url)
    return PortalResponse(url=url)


@router.post("/checkout", response_model=CreateCheckoutResponse)
async def create_checkout(
    request: Request,
    body: CreateCheckoutRequest,
    user: UserContext = Depends(get_user_context),
    bridge: CheckoutSessionBridge = Depends(get_checkout_bridge),
):
    result = await bridge.create_checkout_session(user, body.price_id, origin=request.headers.get("origin"))
    return CreateCheckoutResponse(session_id=result.session_id, url=result.url)
