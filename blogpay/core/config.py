from dataclasses import dataclass
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

MIDTRANS_PRODUCTION_URL = "https://api.midtrans.com/v2"
MIDTRANS_SANDBOX_URL = "https://api.sandbox.midtrans.com/v2"
XENDIT_URL = "https://api.xendit.co"
STRIPE_URL = "https://api.stripe.com/v1"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    DATABASE_URL: str = "sqlite+aiosqlite:///./blogpay.db"

    # Redis settings for Celery
    REDIS_URL: str = "redis://localhost:6379/0"

    # Application base URL for finish / notify links
    APP_BASE_URL: str = "http://127.0.0.1:8000"
    APP_NAME: str = "Blog Platform"
    CORS_ORIGINS: List[str] = ["http://localhost:5173"]

    # Authentication settings (tokens are issued by the auth service)
    SECRET_KEY: str = "secret-key"
    ALGORITHM: str = "HS256"

    # Payment gateways
    PAYMENT_IS_PRODUCTION: bool = False
    PAYMENT_CURRENCY: str = "IDR"

    MIDTRANS_SERVER_KEY: Optional[str] = None
    MIDTRANS_CLIENT_KEY: Optional[str] = None
    MIDTRANS_BASE_URL: Optional[str] = None

    XENDIT_SECRET_KEY: Optional[str] = None
    XENDIT_CALLBACK_TOKEN: Optional[str] = None
    XENDIT_BASE_URL: Optional[str] = None

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_BASE_URL: Optional[str] = None

    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_RETRY_WAIT_SECONDS: float = 1.0

    # Reconciliation and recovery
    RECONCILE_INTERVAL_SECONDS: int = 900
    RECONCILE_STALE_AFTER_SECONDS: int = 3600
    RESERVATION_TIMEOUT_SECONDS: int = 300
    SIDE_EFFECT_MAX_ATTEMPTS: int = 5
    RENEWAL_REMINDER_DAYS: int = 7

    # Brevo settings
    BREVO_API_KEY: Optional[str] = None
    DEFAULT_SENDER_EMAIL: Optional[str] = None


def get_settings():
    return Settings()

settings = get_settings()


@dataclass(frozen=True)
class GatewayCredentials:
    secret_key: Optional[str]
    base_url: str
    public_key: Optional[str] = None
    # Xendit callback token or Stripe endpoint secret
    webhook_secret: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)


@dataclass(frozen=True)
class PaymentConfig:
    """Everything the orchestrator and the gateway adapters need, resolved once."""

    midtrans: GatewayCredentials
    xendit: GatewayCredentials
    stripe: GatewayCredentials
    is_production: bool = False
    currency: str = "IDR"
    app_base_url: str = "http://127.0.0.1:8000"
    timeout_seconds: float = 15.0
    max_attempts: int = 3
    retry_wait_seconds: float = 1.0
    reconcile_interval_seconds: int = 900
    stale_after_seconds: int = 3600
    reservation_timeout_seconds: int = 300
    side_effect_max_attempts: int = 5

    @classmethod
    def from_settings(cls, s: Settings) -> "PaymentConfig":
        midtrans_url = s.MIDTRANS_BASE_URL or (
            MIDTRANS_PRODUCTION_URL if s.PAYMENT_IS_PRODUCTION else MIDTRANS_SANDBOX_URL
        )
        return cls(
            midtrans=GatewayCredentials(
                secret_key=s.MIDTRANS_SERVER_KEY,
                public_key=s.MIDTRANS_CLIENT_KEY,
                base_url=midtrans_url,
            ),
            xendit=GatewayCredentials(
                secret_key=s.XENDIT_SECRET_KEY,
                webhook_secret=s.XENDIT_CALLBACK_TOKEN,
                base_url=s.XENDIT_BASE_URL or XENDIT_URL,
            ),
            stripe=GatewayCredentials(
                secret_key=s.STRIPE_SECRET_KEY,
                public_key=s.STRIPE_PUBLISHABLE_KEY,
                webhook_secret=s.STRIPE_WEBHOOK_SECRET,
                base_url=s.STRIPE_BASE_URL or STRIPE_URL,
            ),
            is_production=s.PAYMENT_IS_PRODUCTION,
            currency=s.PAYMENT_CURRENCY.upper(),
            app_base_url=s.APP_BASE_URL.rstrip("/"),
            timeout_seconds=s.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=max(1, s.GATEWAY_MAX_ATTEMPTS),
            retry_wait_seconds=s.GATEWAY_RETRY_WAIT_SECONDS,
            reconcile_interval_seconds=s.RECONCILE_INTERVAL_SECONDS,
            stale_after_seconds=s.RECONCILE_STALE_AFTER_SECONDS,
            reservation_timeout_seconds=s.RESERVATION_TIMEOUT_SECONDS,
            side_effect_max_attempts=s.SIDE_EFFECT_MAX_ATTEMPTS,
        )
