"""
Billing service configuration.

Settings are read from the environment once at process start and passed to
the services that need them. Nothing reads os.environ at request time.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

DEFAULT_STRIPE_API_BASE = "https://api.stripe.com/v1"
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300  # 5 minutes
DEFAULT_CACHE_TTL_SECONDS = 300


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or invalid."""


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _csv_env(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class BillingSettings:
    """Process-wide settings for the billing service."""

    stripe_webhook_secret: str
    stripe_secret_key: str
    database_url: str
    stripe_api_base: str = DEFAULT_STRIPE_API_BASE
    stripe_api_timeout_sec: float = 10.0
    redis_url: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    admin_emails: FrozenSet[str] = field(default_factory=frozenset)
    webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    app_base_url: str = "http://localhost:5173"
    subscription_cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS

    @classmethod
    def from_env(cls) -> "BillingSettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a required variable is missing
        """
        missing = [
            name for name in ("STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY", "DATABASE_URL")
            if not os.getenv(name, "").strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

        timeout_raw = os.getenv("STRIPE_API_TIMEOUT_SEC", "10").strip() or "10"
        try:
            timeout = float(timeout_raw)
        except ValueError as e:
            raise ConfigurationError(f"STRIPE_API_TIMEOUT_SEC must be a number, got {timeout_raw!r}") from e

        return cls(
            stripe_webhook_secret=os.environ["STRIPE_WEBHOOK_SECRET"].strip(),
            stripe_secret_key=os.environ["STRIPE_SECRET_KEY"].strip(),
            database_url=os.environ["DATABASE_URL"].strip(),
            stripe_api_base=os.getenv("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE).rstrip("/"),
            stripe_api_timeout_sec=timeout,
            redis_url=os.getenv("REDIS_URL") or None,
            supabase_jwt_secret=os.getenv("SUPABASE_JWT_SECRET") or None,
            admin_emails=_csv_env("ADMIN_EMAILS"),
            webhook_tolerance_seconds=_int_env("WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS),
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
            subscription_cache_ttl_seconds=_int_env("SUBSCRIPTION_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS),
        )

    def is_admin_email(self, email: Optional[str]) -> bool:
        if not email:
            return False
        return email.strip().lower() in self.admin_emails
