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

    # Supabase Auth (JWT verification only; the SDK lives in the web tier)
    SUPABASE_JWT_SECRET: Optional[str] = None
    # X-User-Id header auth; unset means development and test only
    ALLOW_HEADER_AUTH: Optional[bool] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Stripe price ids (OMEGA pricing, tiers 1-5)
    STRIPE_PRICE_ID_SPARK_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ID_SPARK_ANNUAL: Optional[str] = None
    STRIPE_PRICE_ID_BLAZE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ID_BLAZE_ANNUAL: Optional[str] = None
    STRIPE_PRICE_ID_RADIANCE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ID_RADIANCE_ANNUAL: Optional[str] = None
    STRIPE_PRICE_ID_SOVEREIGN_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ID_SOVEREIGN_ANNUAL: Optional[str] = None
    STRIPE_PRICE_ID_TRANSCENDENT_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ID_TRANSCENDENT_ANNUAL: Optional[str] = None

    # Tier matrix (defaults to the bundled ryvynn/data/tier_matrix.json)
    TIER_MATRIX_PATH: Optional[str] = None

    # App URLs
    APP_BASE_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("ryvynn")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "SUPABASE_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
