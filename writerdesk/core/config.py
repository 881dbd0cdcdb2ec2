import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_STARTER_MONTHLY: Optional[str] = None
    STRIPE_PRICE_STARTER_YEARLY: Optional[str] = None
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PRO_YEARLY: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # App URLs (checkout redirects)
    APP_URL: Optional[str] = None

    # Subscription policy
    CHECKOUT_TRIAL_DAYS: int = 3
    SIGNUP_TRIAL_DAYS: int = 0  # 0 = new users start active on free
    PAST_DUE_GRACE_DAYS: int = 3

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def price_map(self) -> dict:
        """Map configured Stripe price ids to (tier, billing_period)."""
        pairs = {
            self.STRIPE_PRICE_STARTER_MONTHLY: ("starter", "monthly"),
            self.STRIPE_PRICE_STARTER_YEARLY: ("starter", "yearly"),
            self.STRIPE_PRICE_PRO_MONTHLY: ("pro", "monthly"),
            self.STRIPE_PRICE_PRO_YEARLY: ("pro", "yearly"),
        }
        return {price_id: value for price_id, value in pairs.items() if price_id}

    def price_for(self, tier: str, billing_period: str) -> Optional[str]:
        key = f"STRIPE_PRICE_{tier.upper()}_{billing_period.upper()}"
        return getattr(self, key, None)


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("writerdesk")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_PRO_MONTHLY",
        "STRIPE_PRICE_PRO_YEARLY",
        "APP_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
