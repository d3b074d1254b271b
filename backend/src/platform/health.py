"""
Health checks for the billing service.

Provides:
- Database connectivity
- Configuration validation (presence only; values are never reported)
- Overall status reporting
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.config.settings import BillingSettings

logger = logging.getLogger(__name__)


class HealthChecker:
    """Health check service."""

    def __init__(self, engine: Engine, settings: BillingSettings):
        self.engine = engine
        self.settings = settings

    def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with 'status' (ok/error) and 'message'
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return {"status": "ok", "message": "Database connection successful"}
        except SQLAlchemyError as e:
            logger.error("Database connection failed", extra={"error": str(e)})
            return {"status": "error", "message": "Database connection failed"}

    def check_configuration(self) -> Dict[str, Any]:
        """
        Check required settings are present.

        Returns:
            Dict with 'status', 'present' and 'missing' setting names
        """
        required = {
            "STRIPE_WEBHOOK_SECRET": self.settings.stripe_webhook_secret,
            "STRIPE_SECRET_KEY": self.settings.stripe_secret_key,
            "DATABASE_URL": self.settings.database_url,
        }
        optional = {
            "REDIS_URL": self.settings.redis_url,
            "SUPABASE_JWT_SECRET": self.settings.supabase_jwt_secret,
        }

        present = [name for name, value in {**required, **optional}.items() if value]
        missing = [name for name, value in required.items() if not value]

        return {
            "status": "ok" if not missing else "error",
            "present": present,
            "missing": missing,
            "message": f"{len(present)} settings present, {len(missing)} missing",
        }

    def get_health_status(self) -> Dict[str, Any]:
        db_check = self.check_database()
        config_check = self.check_configuration()

        overall_status = "ok"
        if db_check["status"] != "ok" or config_check["status"] != "ok":
            overall_status = "degraded"

        return {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "billing-reconciler",
            "checks": {
                "database": db_check,
                "configuration": config_check,
            },
        }

    def log_config_status(self):
        """Log configuration status on startup (NO secrets)."""
        config_check = self.check_configuration()
        logger.info("Configuration status", extra={
            "present": config_check["present"],
            "missing": config_check["missing"],
        })
        if config_check["missing"]:
            logger.warning("Missing required settings", extra={"missing": config_check["missing"]})
