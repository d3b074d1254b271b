"""
Application factory for the billing service.

Run with an ASGI server in factory mode, e.g.:
    uvicorn src.main:create_app --factory

Process-wide collaborators are built once here and stored on app.state:
- settings: BillingSettings
- engine / session_factory: SQLAlchemy
- stripe_client: StripeBillingClient
- subscription_cache: SubscriptionCache
Request handlers receive them through dependencies in src.api.dependencies.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from src.api.routes import billing, health, webhooks_billing
from src.config.settings import BillingSettings
from src.database.session import build_engine, build_session_factory, init_db
from src.integrations.stripe.billing_client import StripeBillingClient
from src.platform.errors import ErrorHandlerMiddleware, register_error_handlers
from src.platform.health import HealthChecker
from src.services.subscription_cache import SubscriptionCache

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[BillingSettings] = None,
    *,
    engine: Optional[Engine] = None,
    stripe_client: Optional[StripeBillingClient] = None,
    subscription_cache: Optional[SubscriptionCache] = None,
    create_tables: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Defaults to BillingSettings.from_env()
        engine: Defaults to an engine for settings.database_url
        stripe_client: Defaults to a client for settings.stripe_secret_key
        subscription_cache: Defaults to a cache on settings.redis_url
        create_tables: Create missing tables at startup
    """
    settings = settings or BillingSettings.from_env()
    owns_engine = engine is None
    owns_client = stripe_client is None
    engine = engine or build_engine(settings.database_url)
    stripe_client = stripe_client or StripeBillingClient(
        settings.stripe_secret_key,
        api_base=settings.stripe_api_base,
        timeout=settings.stripe_api_timeout_sec,
    )
    subscription_cache = subscription_cache or SubscriptionCache(
        settings.redis_url,
        ttl_seconds=settings.subscription_cache_ttl_seconds,
    )

    if create_tables:
        init_db(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        HealthChecker(engine, settings).log_config_status()
        yield
        if owns_client:
            await stripe_client.close()
        if owns_engine:
            engine.dispose()

    app = FastAPI(title="Billing Reconciler", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.stripe_client = stripe_client
    app.state.subscription_cache = subscription_cache

    app.add_middleware(ErrorHandlerMiddleware)
    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(webhooks_billing.router)
    app.include_router(billing.router)

    logger.info("Billing service app created", extra={"cache_backend": subscription_cache.backend})
    return app
