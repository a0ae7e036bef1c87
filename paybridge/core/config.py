from functools import lru_cache
import logging
import os
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from paybridge.core.logger import setup_logger, init_sentry


class Settings(BaseSettings):
    # Application settings
    ENVIRONMENT: str = "development"  # Options: development, test, production
    APP_NAME: str = "paybridge"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_DIR: str = "logs"
    LOG_LEVEL: int = logging.INFO

    # Sentry settings
    SENTRY_DSN: str = ""
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Storage settings
    STORAGE_BACKEND: Literal["memory", "redis"] = "memory"
    STORAGE_KEY_PREFIX: str = "paybridge:"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Payment service settings
    PAYMENT_PROCESSOR: Literal[
        "stripe", "paddle", "braintree", "lemon_squeezy", "totalpay_global", "fake"
    ] = "fake"
    PAYMENT_REQUEST_TIMEOUT: float = 30.0  # seconds
    PAYMENT_RETRY_ATTEMPTS: int = 3
    PAYMENT_RETRY_BASE_DELAY: float = 2.0  # seconds, doubled per attempt
    PAYMENT_ENABLE_LOGGING: bool = False

    # Stripe settings
    STRIPE_PUBLISHABLE_KEY: str = "pk_test_your_stripe_publishable_key"
    STRIPE_SECRET_KEY: str = "sk_test_your_stripe_secret_key"
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_BASE_URL: str = "https://api.stripe.com"

    # Paddle settings
    PADDLE_VENDOR_ID: str = ""
    PADDLE_AUTH_CODE: str = ""
    PADDLE_PUBLIC_KEY: str = ""
    PADDLE_ENVIRONMENT: Literal["sandbox", "production"] = "sandbox"

    # Braintree settings
    BRAINTREE_MERCHANT_ID: str = ""
    BRAINTREE_PUBLIC_KEY: str = ""
    BRAINTREE_PRIVATE_KEY: str = ""
    BRAINTREE_ENVIRONMENT: Literal["sandbox", "production"] = "sandbox"

    # Lemon Squeezy settings
    LEMON_SQUEEZY_API_KEY: str = ""
    LEMON_SQUEEZY_STORE_ID: str = ""
    LEMON_SQUEEZY_WEBHOOK_SECRET: str = ""

    # Totalpay settings
    TOTALPAY_MERCHANT_ID: str = ""
    TOTALPAY_API_KEY: str = ""
    TOTALPAY_SECRET_KEY: str = ""
    TOTALPAY_ENVIRONMENT: Literal["sandbox", "production"] = "sandbox"

    # Fake processor settings
    FAKE_SIMULATE_DELAYS: bool = True
    FAKE_DELAY_SECONDS: float = 0.5
    FAKE_FAILURE_RATE: float = 0.0
    FAKE_WEBHOOK_SECRET: str = ""

    model_config: SettingsConfigDict = SettingsConfigDict(  # type: ignore
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _validate_production_secrets(self) -> "Settings":
        """Ensure placeholder credentials are overridden in production."""
        if self.ENVIRONMENT != "production":
            return self

        if self.PAYMENT_PROCESSOR == "fake":
            raise ValueError(
                "ENVIRONMENT is 'production' but PAYMENT_PROCESSOR is 'fake'. "
                "Select a real payment processor."
            )

        insecure_defaults: dict[str, str] = {
            "STRIPE_PUBLISHABLE_KEY": "pk_test_your_stripe_publishable_key",
            "STRIPE_SECRET_KEY": "sk_test_your_stripe_secret_key",
        }

        still_default = [
            name
            for name, default_val in insecure_defaults.items()
            if self.PAYMENT_PROCESSOR == "stripe"
            and getattr(self, name) == default_val
        ]

        if still_default:
            raise ValueError(
                f"ENVIRONMENT is 'production' but the following secrets still "
                f"have their placeholder values: {', '.join(still_default)}. "
                f"Set them via environment variables or .env file."
            )

        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()  # type: ignore


settings = get_settings()

# Initialize Sentry once globally
if not settings.DEBUG:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )


def _component_logger(name: str, tag: str) -> logging.Logger:
    return setup_logger(
        name=f"{name}_logger",
        log_file=os.path.join(settings.LOG_DIR, f"{name}.log"),
        level=settings.LOG_LEVEL,
        sentry_tag=tag,
    )


# One logger per component, each with its own file and Sentry tag
payment_logger = _component_logger("payment", "payment")
stripe_logger = _component_logger("stripe", "stripe")
paddle_logger = _component_logger("paddle", "paddle")
braintree_logger = _component_logger("braintree", "braintree")
lemon_squeezy_logger = _component_logger("lemon_squeezy", "lemon_squeezy")
totalpay_logger = _component_logger("totalpay", "totalpay")
fake_logger = _component_logger("fake", "fake")
webhook_logger = _component_logger("webhook", "webhook")
storage_logger = _component_logger("storage", "storage")

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "payment_logger",
    "stripe_logger",
    "paddle_logger",
    "braintree_logger",
    "lemon_squeezy_logger",
    "totalpay_logger",
    "fake_logger",
    "webhook_logger",
    "storage_logger",
]
