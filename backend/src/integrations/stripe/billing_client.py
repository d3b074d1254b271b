"""
Stripe REST API client for subscription billing.

Talks to the Stripe v1 REST API directly with httpx (form-encoded requests,
bearer secret key). No vendor SDK.

Used by:
- the reconciler, to fetch a subscription referenced by a checkout session
- the checkout bridge, to create customers and checkout sessions
- the client entitlement store, for cancel-at-period-end and the billing portal
- the resync job, to list customers and subscriptions by email
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx

from src.billing.errors import ProviderAPIError
from src.billing.events import ProviderSubscription
from src.config.billing_policy import CORRELATION_METADATA_KEY
from src.config.settings import DEFAULT_STRIPE_API_BASE

logger = logging.getLogger(__name__)


@dataclass
class StripeCheckoutSession:
    """Checkout session created for a user."""
    session_id: str
    url: Optional[str] = None


def encode_form(params: Mapping[str, Any], prefix: str = "") -> List[tuple]:
    """
    Flatten nested params into Stripe's bracketed form encoding.

    {"metadata": {"user_id": "u1"}, "line_items": [{"price": "p"}]} becomes
    [("metadata[user_id]", "u1"), ("line_items[0][price]", "p")].
    Booleans are sent as "true"/"false"; None values are dropped.
    """
    pairs: List[tuple] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, Mapping):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, _form_value(item)))
        else:
            pairs.append((name, _form_value(value)))
    return pairs


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeBillingClient:
    """
    Async client for the subset of the Stripe API the billing service uses.

    Every failure is raised as ProviderAPIError carrying the provider's HTTP
    status (None for network errors) so callers can tell retryable failures
    from rejected requests.
    """

    def __init__(
        self,
        secret_key: str,
        api_base: str = DEFAULT_STRIPE_API_BASE,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            secret_key: Stripe secret API key
            api_base: API root, e.g. https://api.stripe.com/v1
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Call the API and return the decoded JSON object.

        Raises:
            ProviderAPIError: Non-2xx response, transport failure, or a body
                that is not a JSON object (not retryable)
        """
        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            if method == "GET":
                response = await self._client.get(url, params=encode_form(params or {}))
            else:
                response = await self._client.post(url, data=dict(encode_form(params or {})))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            provider_message = _error_message(e.response)
            logger.error("Stripe API HTTP error", extra={
                "path": path,
                "status_code": e.response.status_code,
                "provider_message": provider_message,
            })
            raise ProviderAPIError(
                f"Stripe API error: {e.response.status_code}",
                provider_status=e.response.status_code,
                provider_message=provider_message,
            ) from e
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise ProviderAPIError(f"Request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error("Stripe API returned invalid JSON", extra={"path": path})
            raise ProviderAPIError(
                "Stripe API returned an invalid response",
                provider_status=response.status_code,
                retryable=False,
            ) from e
        if not isinstance(data, dict):
            raise ProviderAPIError(
                "Stripe API returned an invalid response",
                provider_status=response.status_code,
                retryable=False,
            )
        return data

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        data = await self._request("GET", f"subscriptions/{subscription_id}")
        return _to_subscription(data)

    async def list_subscriptions(self, customer_id: str) -> List[ProviderSubscription]:
        data = await self._request("GET", "subscriptions", {"customer": customer_id, "status": "all"})
        return [_to_subscription(item) for item in data.get("data", [])]

    async def list_customers_by_email(self, email: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", "customers", {"email": email})
        return list(data.get("data", []))

    async def create_customer(self, email: Optional[str], user_id: str) -> str:
        """Create a customer tagged with the local user id. Returns the customer id."""
        data = await self._request("POST", "customers", {
            "email": email or "",
            "metadata": {CORRELATION_METADATA_KEY: user_id},
        })
        logger.info("Stripe customer created", extra={"user_id": user_id, "customer_id": data.get("id")})
        return _required(data, "id", "customers")

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> StripeCheckoutSession:
        """
        Create a subscription-mode checkout session.

        The user id is written to both the session and the resulting
        subscription metadata; webhooks use it to find the local row.
        """
        data = await self._request("POST", "checkout/sessions", {
            "mode": "subscription",
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "billing_address_collection": "required",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {CORRELATION_METADATA_KEY: user_id},
            "subscription_data": {"metadata": {CORRELATION_METADATA_KEY: user_id}},
        })
        return StripeCheckoutSession(session_id=_required(data, "id", "checkout/sessions"), url=data.get("url"))

    async def cancel_at_period_end(self, subscription_id: str) -> ProviderSubscription:
        """Flag a subscription to end at its current period end. Never cancels immediately."""
        data = await self._request("POST", f"subscriptions/{subscription_id}", {
            "cancel_at_period_end": True,
        })
        return _to_subscription(data)

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a provider-hosted billing portal session. Returns its URL."""
        data = await self._request("POST", "billing_portal/sessions", {
            "customer": customer_id,
            "return_url": return_url,
        })
        return _required(data, "url", "billing_portal/sessions")


def _to_subscription(data: Dict[str, Any]) -> ProviderSubscription:
    try:
        return ProviderSubscription.model_validate(data)
    except ValueError as e:
        logger.error("Stripe API returned an unusable subscription", extra={
            "subscription_id": data.get("id") if isinstance(data, dict) else None,
        })
        raise ProviderAPIError("Unexpected subscription payload", retryable=False) from e


def _required(data: Dict[str, Any], field: str, path: str) -> Any:
    value = data.get(field)
    if not value:
        logger.error("Stripe API response missing field", extra={"path": path, "field": field})
        raise ProviderAPIError(f"Stripe API response missing {field}", retryable=False)
    return value


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message")
    return None
