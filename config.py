import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "farmmarket"

    secret_key: str = "devsecretkey"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    bcrypt_rounds: int = 12

    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 3600
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 100

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    currency: str = "rub"

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: str = "FarmMarket <noreply@farmmarket.local>"
    frontend_url: str = "http://localhost:5173"

    # Pricing / inventory policy
    delivery_fee: float = 200.0
    free_delivery_threshold: float = 2000.0
    low_stock_threshold: int = 10

    scheduler_enabled: bool = False
    scheduler_timezone: str = "Europe/Moscow"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.model_fields["database_url"].default),
            database_name=os.getenv("DATABASE_NAME", cls.model_fields["database_name"].default),
            secret_key=os.getenv("SECRET_KEY", "devsecretkey"),
            access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            redis_url=os.getenv("REDIS_URL") or None,
            cache_ttl_seconds=_env_int("CACHE_TTL_SECONDS", 3600),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
            rate_limit_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 100),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            currency=os.getenv("CURRENCY", "rub"),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            email_from=os.getenv("EMAIL_FROM", cls.model_fields["email_from"].default),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
            delivery_fee=_env_float("DELIVERY_FEE", 200.0),
            free_delivery_threshold=_env_float("FREE_DELIVERY_THRESHOLD", 2000.0),
            low_stock_threshold=_env_int("LOW_STOCK_THRESHOLD", 10),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", False),
            scheduler_timezone=os.getenv("SCHEDULER_TIMEZONE", "Europe/Moscow"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
