# ==================================================================================
# core/config.py: Application Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
import logging
import sys

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./community_billing.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: float = 10.0

    # Provider calls outside the reconciliation path
    PROVIDER_MAX_RETRIES: int = 3
    PROVIDER_BACKOFF_BASE_SECONDS: float = 0.5

    # Row-lock conflicts while reconciling
    RECONCILE_MAX_ATTEMPTS: int = 3

    # ------------------------
    # REVENUE / REPORTING
    # ------------------------
    PLATFORM_FEE_BPS: int = 500  # 5%
    REPORTING_CURRENCY: str = "usd"
    REPORTING_CURRENCY_EXPONENT: int = 2
    REVENUE_INVOICE_SOURCE: str = "provider"  # 'provider' | 'ledger'

    # ------------------------
    # EVENT RETENTION / SCHEDULER
    # ------------------------
    PROCESSED_EVENT_RETENTION_DAYS: int = 30
    SCHEDULER_ENABLED: bool = False
    PRUNE_INTERVAL_HOURS: int = 24

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: str | None = None
    MAIL_FROM: str | None = None
    FRONTEND_URL: str = "http://localhost:5173"

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    logger.info(f"✅ Environment loaded. Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
except ValidationError as e:
    logger.error(f"❌ Environment configuration error: missing or invalid settings!\n{e}")
    sys.exit(1)
