"""Application configuration"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


CASHFREE_BASE_URLS = {
    "production": "https://api.cashfree.com/pg",
    "sandbox": "https://sandbox.cashfree.com/pg",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Slack Summary Scribe Billing API"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # Session tokens
    # WHY: Sessions are issued by the identity provider; we only verify them
    SESSION_JWT_SECRET: str
    SESSION_JWT_ALGORITHM: str = "HS256"
    SESSION_JWT_AUDIENCE: Optional[str] = None  # e.g. "authenticated"
    SESSION_COOKIE_NAME: str = "sb-access-token"

    # URLs
    APP_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # seconds
    STRIPE_PRICE_PRO: Optional[str] = None  # price_xxx
    STRIPE_PRICE_ENTERPRISE: Optional[str] = None  # price_xxx

    # Cashfree
    CASHFREE_APP_ID: str
    CASHFREE_SECRET_KEY: str
    CASHFREE_WEBHOOK_SECRET: str
    CASHFREE_ENVIRONMENT: str = "sandbox"  # sandbox | production
    CASHFREE_API_VERSION: str = "2023-08-01"

    # Billing periods
    PAID_PERIOD_DAYS: int = 30
    FREE_PERIOD_DAYS: int = 365

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    @property
    def cashfree_base_url(self) -> str:
        """
        Cashfree PG base URL for the configured environment.

        WHY: Anything other than "production" talks to the sandbox so a
        misconfigured deployment never charges real cards.
        """
        if self.CASHFREE_ENVIRONMENT.lower() == "production":
            return CASHFREE_BASE_URLS["production"]
        return CASHFREE_BASE_URLS["sandbox"]

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")


settings = Settings()
