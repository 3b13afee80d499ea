import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Credential service (token issuance lives elsewhere; we only verify)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ALLOW_HEADER_AUTH: bool = False  # X-User-Id fallback, dev/tests only

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    PAYMENT_PROVIDER_TIMEOUT_SEC: float = 10.0

    # Webhook arriving for a different plan while another is active:
    # "supersede" (cancel old, activate paid plan) | "hold" (record only)
    RECONCILE_CROSS_PLAN_POLICY: str = "supersede"

    # Seconds an unfinished webhook claim blocks redeliveries before it is taken over
    WEBHOOK_CLAIM_LEASE_SEC: int = 60

    # App URLs
    CLIENT_URL: str = "http://localhost:5173"
    BACKEND_URL: str = "http://localhost:8000"
    CORS_ORIGINS: str = "http://localhost:5173"  # comma-separated

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30

    # Startup
    SEED_PLANS_ON_STARTUP: bool = False

    # Admin listing
    ADMIN_PAGE_LIMIT_MAX: int = 100

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("subscription_dashboard")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    policy = str(getattr(cfg, "RECONCILE_CROSS_PLAN_POLICY", "")).lower()
    if policy not in {"supersede", "hold"}:
        message = f"RECONCILE_CROSS_PLAN_POLICY must be 'supersede' or 'hold', got {policy!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
