import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/tebra_sync"
    DATABASE_URL_SYNC: str = "postgresql+psycopg2://postgres:postgres@db:5432/tebra_sync"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    APP_URL: str = "http://localhost:8000"
    APP_ENV: str = "development"

    # Tebra / Kareo SOAP
    TEBRA_SOAP_ENDPOINT: str = "https://webservice.kareo.com/services/soap/2.1/KareoServices.svc"
    TEBRA_NAMESPACE: str = "http://www.kareo.com/api/schemas/"
    TEBRA_CUSTOMER_KEY: str = ""
    TEBRA_USER: str = ""
    TEBRA_PASSWORD: str = ""
    TEBRA_PRACTICE_ID: str = ""
    TEBRA_PRACTICE_NAME: str = ""
    TEBRA_TIMEOUT_SECONDS: float = 15.0
    # First action candidate; empty means "{TEBRA_NAMESPACE}KareoServices/{operation}"
    TEBRA_SOAP_ACTION_BASE: str = ""
    TEBRA_SOAP_ACTION_FALLBACKS: str = (
        "http://www.kareo.com/api/schemas/KareoServices/{operation},"
        "http://www.kareo.com/api/schemas/IKareoServices/{operation},"
        "http://tempuri.org/IKareoServices/{operation}"
    )
    TEBRA_DEFAULT_APPT_REASON_ID: str = ""
    TEBRA_BILLING_MOCK: bool = False
    TEBRA_MAX_SLOT_SHIFTS: int = 24

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Idempotency marker for webhook deliveries (7 days)
    PROCESSED_EVENT_TTL_SECONDS: int = 7 * 24 * 60 * 60

    # Recurring subscription billing loop
    ENABLE_RECURRING_BILLING: bool = False

    # Database connection pool (tune per environment via env vars)
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    model_config = {"env_file": "../.env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def soap_action_fallbacks(self) -> list[str]:
        return [t.strip() for t in self.TEBRA_SOAP_ACTION_FALLBACKS.split(",") if t.strip()]


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    if settings.APP_ENV == "production":
        missing = [
            name for name in ("TEBRA_CUSTOMER_KEY", "TEBRA_USER", "TEBRA_PASSWORD")
            if not getattr(settings, name)
        ]
        if missing:
            raise RuntimeError(
                "FATAL: Tebra credentials missing in production: "
                + ", ".join(missing)
            )

        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.warning(
                "WARNING: STRIPE_WEBHOOK_SECRET is not set. "
                "Stripe webhooks will be rejected."
            )

        origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
        if "*" in origins:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS contains '*' which is not allowed in production. "
                "Set explicit allowed origins, e.g. CORS_ORIGINS=https://app.example.com"
            )

        if settings.TEBRA_BILLING_MOCK:
            logger.warning(
                "TEBRA_BILLING_MOCK is enabled in production; "
                "charges and payments will not reach Tebra."
            )

    return settings


def clear_settings_cache() -> None:
    """Clear the cached Settings so the next call to ``get_settings()``
    re-reads environment variables.  Useful after rotating Tebra credentials
    without a full process restart.
    """
    get_settings.cache_clear()
