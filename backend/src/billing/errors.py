"""
Billing error hierarchy.

Provides:
- SignatureInvalidError: untrusted input, rejected with 400
- MalformedPayloadError: authentic but unparseable, rejected with 400
- MissingCorrelationError: no user_id on the event, acknowledged (terminal)
- ConflictingRecordError: write would break a uniqueness invariant (terminal)
- TransientStoreError: storage failure unrelated to the event (retryable)
- ProviderAPIError: payment provider call failed (retryable on 5xx/network)
- BillingActionError: client-facing failure reduced to an actionable message

Terminal errors are logged and acknowledged so the provider stops retrying.
Retryable errors surface as 503 so the provider redelivers the same event.
"""

from typing import Optional

from fastapi import status

from src.platform.errors import AppError


class BillingError(AppError):
    """Base class for billing failures."""

    retryable = False

    def __init__(self, code: str, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(code=code, message=message, status_code=status_code)


class SignatureInvalidError(BillingError):
    """Webhook signature missing, malformed, stale or not matching."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__("SIGNATURE_INVALID", message)


class MalformedPayloadError(BillingError):
    """Authenticated body that cannot be decoded into a billing event."""

    def __init__(self, message: str):
        super().__init__("MALFORMED_PAYLOAD", message)


class MissingCorrelationError(BillingError):
    """Event lacks the user_id needed to attach it to a local record."""

    def __init__(self, object_type: str, object_id: Optional[str]):
        self.object_type = object_type
        self.object_id = object_id
        super().__init__(
            "MISSING_CORRELATION",
            f"No user_id found in {object_type} metadata",
            status_code=status.HTTP_200_OK,
        )


class ConflictingRecordError(BillingError):
    """Write rejected by a uniqueness constraint; retrying cannot fix it."""

    def __init__(self, message: str):
        super().__init__("CONFLICTING_RECORD", message, status_code=status.HTTP_409_CONFLICT)


class TransientStoreError(BillingError):
    """Storage round-trip failed (timeout, connection loss)."""

    retryable = True

    def __init__(self, message: str = "Subscription store temporarily unavailable"):
        super().__init__("STORE_UNAVAILABLE", message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class ProviderAPIError(BillingError):
    """
    Payment provider API call failed.

    provider_status is the HTTP status from the provider, or None for
    network-level failures. 5xx/429/network failures are retryable; an explicit
    retryable argument overrides that rule.
    """

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        provider_message: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        self.provider_status = provider_status
        self.provider_message = provider_message
        self._retryable = retryable
        super().__init__("PROVIDER_ERROR", message, status_code=status.HTTP_502_BAD_GATEWAY)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        if self._retryable is not None:
            return self._retryable
        if self.provider_status is None:
            return True
        return self.provider_status == 429 or self.provider_status >= 500


class BillingActionError(BillingError):
    """Client-facing billing operation failed; message is safe to show users."""

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__("BILLING_ACTION_FAILED", message, status_code=status_code)
