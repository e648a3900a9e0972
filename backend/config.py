"""
Configuration settings for the Domain Ledger backend.
Uses pydantic-settings for environment variable management.

DATABASE_URL priority:
  1. DATABASE_URL env var (PostgreSQL in production)
  2. Fallback: SQLite for local development
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Domain Ledger Platform"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./domain_ledger.db"

    @property
    def is_postgres(self) -> bool:
        """True when using PostgreSQL."""
        return self.DATABASE_URL.startswith("postgresql")

    # PayPal
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_MODE: str = "sandbox"  # sandbox | live
    PAYPAL_TIMEOUT_SECONDS: float = 15.0
    PAYPAL_WEBHOOK_SECRET: str = ""
    PAYPAL_RETURN_URL: str = "https://example.com/paypal/return"
    PAYPAL_CANCEL_URL: str = "https://example.com/paypal/cancel"

    @property
    def paypal_api_base(self) -> str:
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    # Without credentials the in-memory processor is used only when this
    # (or DEBUG) is on; otherwise startup of the payment gateway fails.
    PAYMENT_DEV_MODE: bool = False

    @property
    def paypal_configured(self) -> bool:
        return bool(self.PAYPAL_CLIENT_ID.strip() and self.PAYPAL_CLIENT_SECRET.strip())

    @property
    def payment_dev_mode(self) -> bool:
        """Mock processor orders, no outbound calls."""
        return self.PAYMENT_DEV_MODE or self.DEBUG

    # Billing
    DEFAULT_CURRENCY: str = "USD"
    REGISTRATION_PERIOD_DAYS: int = 365
    CHECKOUT_HOLD_MINUTES: int = 60  # an unpaid checkout reserves its fqdn this long

    # Transfers
    TRANSFER_FEE: str = "50.00"
    TRANSFER_NEW_PERIOD_FEE: str = "100.00"
    TRANSFER_LOCK_DAYS: int = 60

    # Scheduled jobs
    RECONCILIATION_WINDOW_HOURS: int = 24
    NOTIFICATION_BATCH_SIZE: int = 100

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Security (tokens are issued by the external auth service)
    SECRET_KEY: str = "domain-ledger-secret-key-change-in-production"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
