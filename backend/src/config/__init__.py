"""Configuration module for the billing service."""

from src.config.billing_policy import (
    CORRELATION_METADATA_KEY,
    PAYMENT_FAILURE_CANCEL_THRESHOLD,
    PREMIUM_FEATURES,
)
from src.config.settings import BillingSettings, ConfigurationError

__all__ = [
    "BillingSettings",
    "ConfigurationError",
    "CORRELATION_METADATA_KEY",
    "PAYMENT_FAILURE_CANCEL_THRESHOLD",
    "PREMIUM_FEATURES",
]
