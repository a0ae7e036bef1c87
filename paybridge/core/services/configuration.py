"""
Payment configuration and processor factory.

A ``PaymentConfiguration`` holds exactly one processor configuration (a
tagged union discriminated by ``processor``) plus general options.
``create_processor`` is the only place adapters are constructed, and
``create_payment_service`` returns a caller-owned ``PaymentService``.
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal, Union

import httpx
from pydantic import BaseModel, Field

from paybridge.core.config import (
    Settings,
    braintree_logger,
    fake_logger,
    lemon_squeezy_logger,
    paddle_logger,
    payment_logger,
    storage_logger,
    stripe_logger,
    totalpay_logger,
    webhook_logger,
)
from paybridge.core.enums import ProviderEnvironment
from paybridge.core.exceptions.types import (
    InvalidConfigurationException,
    PaymentException,
)
from paybridge.core.services.payment.base import PaymentProcessor
from paybridge.core.services.payment.braintree.main import BraintreeProcessor
from paybridge.core.services.payment.fake.main import FakeProcessor
from paybridge.core.services.payment.lemon_squeezy.main import LemonSqueezyProcessor
from paybridge.core.services.payment.paddle.main import PaddleProcessor
from paybridge.core.services.payment.stripe.main import StripeProcessor
from paybridge.core.services.payment.totalpay.main import TotalpayProcessor
from paybridge.core.services.payment_service import PaymentService
from paybridge.core.services.storage import MemoryStorage, Storage

_PROCESSOR_LOGGERS: tuple[logging.Logger, ...] = (
    payment_logger,
    stripe_logger,
    paddle_logger,
    braintree_logger,
    lemon_squeezy_logger,
    totalpay_logger,
    fake_logger,
    webhook_logger,
    storage_logger,
)


def _require(value: str | None, field_name: str, label: str) -> None:
    if not value or not value.strip():
        raise InvalidConfigurationException(
            f"{label} is required", field_name=field_name
        )


class StripeConfig(BaseModel):
    processor: Literal["stripe"] = "stripe"
    publishable_key: str
    secret_key: str
    webhook_secret: str | None = None
    api_base_url: str = "https://api.stripe.com"
    webhook_tolerance: int | None = None

    def validate_credentials(self) -> None:
        _require(self.publishable_key, "stripe_publishable_key", "Stripe publishable key")
        _require(self.secret_key, "stripe_secret_key", "Stripe secret key")
        if not self.publishable_key.startswith("pk_"):
            raise InvalidConfigurationException(
                "Stripe publishable key must start with pk_",
                field_name="stripe_publishable_key",
            )
        if not self.secret_key.startswith("sk_"):
            raise InvalidConfigurationException(
                "Stripe secret key must start with sk_",
                field_name="stripe_secret_key",
            )


class PaddleConfig(BaseModel):
    processor: Literal["paddle"] = "paddle"
    vendor_id: str
    vendor_auth_code: str
    public_key: str
    environment: ProviderEnvironment = ProviderEnvironment.SANDBOX

    def validate_credentials(self) -> None:
        _require(self.vendor_id, "paddle_vendor_id", "Paddle vendor ID")
        _require(self.vendor_auth_code, "paddle_auth_code", "Paddle vendor auth code")
        _require(self.public_key, "paddle_public_key", "Paddle public key")


class BraintreeConfig(BaseModel):
    processor: Literal["braintree"] = "braintree"
    merchant_id: str
    public_key: str
    private_key: str
    environment: ProviderEnvironment = ProviderEnvironment.SANDBOX

    def validate_credentials(self) -> None:
        _require(self.merchant_id, "braintree_merchant_id", "Braintree merchant ID")
        _require(self.public_key, "braintree_public_key", "Braintree public key")
        _require(self.private_key, "braintree_private_key", "Braintree private key")


class LemonSqueezyConfig(BaseModel):
    processor: Literal["lemon_squeezy"] = "lemon_squeezy"
    api_key: str
    store_id: str
    webhook_secret: str | None = None

    def validate_credentials(self) -> None:
        _require(self.api_key, "lemon_squeezy_api_key", "Lemon Squeezy API key")
        _require(self.store_id, "lemon_squeezy_store_id", "Lemon Squeezy store ID")


class TotalpayConfig(BaseModel):
    processor: Literal["totalpay_global"] = "totalpay_global"
    merchant_id: str
    api_key: str
    secret_key: str
    environment: ProviderEnvironment = ProviderEnvironment.SANDBOX

    def validate_credentials(self) -> None:
        _require(self.merchant_id, "totalpay_merchant_id", "Totalpay merchant ID")
        _require(self.api_key, "totalpay_api_key", "Totalpay API key")
        _require(self.secret_key, "totalpay_secret_key", "Totalpay secret key")


class FakeConfig(BaseModel):
    processor: Literal["fake"] = "fake"
    simulate_delays: bool = True
    delay_seconds: float = 0.5
    failure_rate: float = 0.0
    webhook_secret: str | None = None

    def validate_credentials(self) -> None:
        if not 0.0 <= self.failure_rate <= 1.0:
            raise InvalidConfigurationException(
                "failure_rate must be between 0.0 and 1.0", field_name="failure_rate"
            )
        if self.delay_seconds < 0:
            raise InvalidConfigurationException(
                "delay_seconds cannot be negative", field_name="delay_seconds"
            )


ProcessorConfig = Annotated[
    Union[
        StripeConfig,
        PaddleConfig,
        BraintreeConfig,
        LemonSqueezyConfig,
        TotalpayConfig,
        FakeConfig,
    ],
    Field(discriminator="processor"),
]


class PaymentConfiguration(BaseModel):
    processor: ProcessorConfig
    enable_logging: bool = False
    request_timeout: float = 30.0
    retry_attempts: int = 3
    retry_base_delay: float = 2.0

    def validate_configuration(self) -> None:
        """Pre-flight checks; raises ``InvalidConfigurationException`` naming the field."""
        self.processor.validate_credentials()
        if self.request_timeout <= 0:
            raise InvalidConfigurationException(
                "request_timeout must be positive", field_name="request_timeout"
            )
        if self.retry_attempts < 1:
            raise InvalidConfigurationException(
                "retry_attempts must be at least 1", field_name="retry_attempts"
            )
        if self.retry_base_delay < 0:
            raise InvalidConfigurationException(
                "retry_base_delay cannot be negative", field_name="retry_base_delay"
            )


class PaymentConfigurationBuilder:
    """
    Fluent builder for ``PaymentConfiguration``.

    Example:
        >>> config = (
        ...     PaymentConfigurationBuilder()
        ...     .use_stripe(publishable_key="pk_test_x", secret_key="sk_test_x")
        ...     .enable_logging()
        ...     .set_timeout(10)
        ...     .build()
        ... )
    """

    def __init__(self):
        self._processor: ProcessorConfig | None = None
        self._enable_logging = False
        self._request_timeout = 30.0

    def use_stripe(
        self,
        publishable_key: str,
        secret_key: str,
        webhook_secret: str | None = None,
    ) -> PaymentConfigurationBuilder:
        self._processor = StripeConfig(
            publishable_key=publishable_key,
            secret_key=secret_key,
            webhook_secret=webhook_secret,
        )
        return self

    def use_paddle(
        self,
        vendor_id: str,
        vendor_auth_code: str,
        public_key: str,
        environment: ProviderEnvironment = ProviderEnvironment.SANDBOX,
    ) -> PaymentConfigurationBuilder:
        self._processor = PaddleConfig(
            vendor_id=vendor_id,
            vendor_auth_code=vendor_auth_code,
            public_key=public_key,
            environment=environment,
        )
        return self

    def use_braintree(
        self,
        merchant_id: str,
        public_key: str,
        private_key: str,
        environment: ProviderEnvironment = ProviderEnvironment.SANDBOX,
    ) -> PaymentConfigurationBuilder:
        self._processor = BraintreeConfig(
            merchant_id=merchant_id,
            public_key=public_key,
            private_key=private_key,
            environment=environment,
        )
        return self

    def use_lemon_squeezy(
        self,
        api_key: str,
        store_id: str,
        webhook_secret: str | None = None,
    ) -> PaymentConfigurationBuilder:
        self._processor = LemonSqueezyConfig(
            api_key=api_key, store_id=store_id, webhook_secret=webhook_secret
        )
        return self

    def use_totalpay(
        self,
        merchant_id: str,
        api_key: str,
        secret_key: str,
        environment: ProviderEnvironment = ProviderEnvironment.SANDBOX,
    ) -> PaymentConfigurationBuilder:
        self._processor = TotalpayConfig(
            merchant_id=merchant_id,
            api_key=api_key,
            secret_key=secret_key,
            environment=environment,
        )
        return self

    def use_fake(
        self,
        simulate_delays: bool = True,
        delay_seconds: float = 0.5,
        failure_rate: float = 0.0,
        webhook_secret: str | None = None,
    ) -> PaymentConfigurationBuilder:
        self._processor = FakeConfig(
            simulate_delays=simulate_delays,
            delay_seconds=delay_seconds,
            failure_rate=failure_rate,
            webhook_secret=webhook_secret,
        )
        return self

    def enable_logging(self) -> PaymentConfigurationBuilder:
        self._enable_logging = True
        return self

    def disable_logging(self) -> PaymentConfigurationBuilder:
        self._enable_logging = False
        return self

    def set_timeout(self, seconds: float) -> PaymentConfigurationBuilder:
        self._request_timeout = seconds
        return self

    def build(self) -> PaymentConfiguration:
        """
        Validate and return the configuration.

        Raises:
            InvalidConfigurationException: If no processor was selected or a
                credential is missing or malformed.
        """
        if self._processor is None:
            raise InvalidConfigurationException(
                "No payment processor configured", field_name="processor"
            )
        config = PaymentConfiguration(
            processor=self._processor,
            enable_logging=self._enable_logging,
            request_timeout=self._request_timeout,
        )
        config.validate_configuration()
        return config


def create_processor(
    config: PaymentConfiguration | ProcessorConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentProcessor:
    """
    Construct the adapter selected by the configuration.

    Args:
        config: A full configuration or a bare processor configuration.
        transport: Optional httpx transport, used by tests to mock the provider.

    Returns:
        The configured PaymentProcessor.

    Raises:
        InvalidConfigurationException: If the credentials fail validation.
    """
    timeout = 30.0
    if isinstance(config, PaymentConfiguration):
        config.validate_configuration()
        timeout = config.request_timeout
        processor_config = config.processor
    else:
        processor_config = config
        processor_config.validate_credentials()

    if isinstance(processor_config, StripeConfig):
        processor: PaymentProcessor = StripeProcessor(
            publishable_key=processor_config.publishable_key,
            secret_key=processor_config.secret_key,
            webhook_secret=processor_config.webhook_secret,
            base_url=processor_config.api_base_url,
            webhook_tolerance=processor_config.webhook_tolerance,
            timeout=timeout,
            transport=transport,
        )
    elif isinstance(processor_config, PaddleConfig):
        processor = PaddleProcessor(
            vendor_id=processor_config.vendor_id,
            vendor_auth_code=processor_config.vendor_auth_code,
            public_key=processor_config.public_key,
            environment=processor_config.environment,
            timeout=timeout,
            transport=transport,
        )
    elif isinstance(processor_config, BraintreeConfig):
        processor = BraintreeProcessor(
            merchant_id=processor_config.merchant_id,
            public_key=processor_config.public_key,
            private_key=processor_config.private_key,
            environment=processor_config.environment,
            timeout=timeout,
            transport=transport,
        )
    elif isinstance(processor_config, LemonSqueezyConfig):
        processor = LemonSqueezyProcessor(
            api_key=processor_config.api_key,
            store_id=processor_config.store_id,
            webhook_secret=processor_config.webhook_secret,
            timeout=timeout,
            transport=transport,
        )
    elif isinstance(processor_config, TotalpayConfig):
        processor = TotalpayProcessor(
            merchant_id=processor_config.merchant_id,
            api_key=processor_config.api_key,
            secret_key=processor_config.secret_key,
            environment=processor_config.environment,
        )
    elif isinstance(processor_config, FakeConfig):
        processor = FakeProcessor(
            simulate_delays=processor_config.simulate_delays,
            delay_seconds=processor_config.delay_seconds,
            failure_rate=processor_config.failure_rate,
            webhook_secret=processor_config.webhook_secret,
        )
    else:
        raise InvalidConfigurationException(
            f"Unknown processor configuration: {type(processor_config).__name__}",
            field_name="processor",
        )

    payment_logger.info(f"{processor.name} processor created")
    return processor


def apply_logging(enabled: bool) -> None:
    """Show request-level INFO logs from the payment loggers, or keep only warnings."""
    level = logging.INFO if enabled else logging.WARNING
    for logger in _PROCESSOR_LOGGERS:
        logger.setLevel(level)


async def create_payment_service(
    config: PaymentConfiguration,
    storage: Storage | None = None,
    validate_processor: bool = True,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentService:
    """
    Build a new, caller-owned ``PaymentService``.

    Args:
        config: The payment configuration.
        storage: Cache storage. Defaults to a fresh MemoryStorage.
        validate_processor: Run the processor's remote credential check.
            Failures are logged as warnings and do not abort construction.
        transport: Optional httpx transport for the processor client.

    Returns:
        PaymentService: The service wrapping the configured processor.
    """
    apply_logging(config.enable_logging)
    processor = create_processor(config, transport=transport)

    if validate_processor:
        try:
            await processor.validate_configuration()
        except PaymentException as e:
            payment_logger.warning(
                f"{processor.name} configuration validation failed: {e}"
            )

    return PaymentService(
        processor,
        storage if storage is not None else MemoryStorage(),
        retry_attempts=config.retry_attempts,
        retry_base_delay=config.retry_base_delay,
    )


def load_configuration(settings: Settings) -> PaymentConfiguration:
    """
    Build a configuration from environment settings.

    Args:
        settings: Application settings; ``PAYMENT_PROCESSOR`` selects the
            provider and the matching ``<PROVIDER>_*`` fields supply credentials.

    Returns:
        PaymentConfiguration: The validated configuration.
    """
    processor_name = settings.PAYMENT_PROCESSOR
    processor: ProcessorConfig
    if processor_name == "stripe":
        processor = StripeConfig(
            publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET or None,
            api_base_url=settings.STRIPE_API_BASE_URL,
        )
    elif processor_name == "paddle":
        processor = PaddleConfig(
            vendor_id=settings.PADDLE_VENDOR_ID,
            vendor_auth_code=settings.PADDLE_AUTH_CODE,
            public_key=settings.PADDLE_PUBLIC_KEY,
            environment=ProviderEnvironment(settings.PADDLE_ENVIRONMENT),
        )
    elif processor_name == "braintree":
        processor = BraintreeConfig(
            merchant_id=settings.BRAINTREE_MERCHANT_ID,
            public_key=settings.BRAINTREE_PUBLIC_KEY,
            private_key=settings.BRAINTREE_PRIVATE_KEY,
            environment=ProviderEnvironment(settings.BRAINTREE_ENVIRONMENT),
        )
    elif processor_name == "lemon_squeezy":
        processor = LemonSqueezyConfig(
            api_key=settings.LEMON_SQUEEZY_API_KEY,
            store_id=settings.LEMON_SQUEEZY_STORE_ID,
            webhook_secret=settings.LEMON_SQUEEZY_WEBHOOK_SECRET or None,
        )
    elif processor_name == "totalpay_global":
        processor = TotalpayConfig(
            merchant_id=settings.TOTALPAY_MERCHANT_ID,
            api_key=settings.TOTALPAY_API_KEY,
            secret_key=settings.TOTALPAY_SECRET_KEY,
            environment=ProviderEnvironment(settings.TOTALPAY_ENVIRONMENT),
        )
    else:
        processor = FakeConfig(
            simulate_delays=settings.FAKE_SIMULATE_DELAYS,
            delay_seconds=settings.FAKE_DELAY_SECONDS,
            failure_rate=settings.FAKE_FAILURE_RATE,
            webhook_secret=settings.FAKE_WEBHOOK_SECRET or None,
        )

    config = PaymentConfiguration(
        processor=processor,
        enable_logging=settings.PAYMENT_ENABLE_LOGGING,
        request_timeout=settings.PAYMENT_REQUEST_TIMEOUT,
        retry_attempts=settings.PAYMENT_RETRY_ATTEMPTS,
        retry_base_delay=settings.PAYMENT_RETRY_BASE_DELAY,
    )
    config.validate_configuration()
    return config


__all__ = [
    "BraintreeConfig",
    "FakeConfig",
    "LemonSqueezyConfig",
    "PaddleConfig",
    "PaymentConfiguration",
    "PaymentConfigurationBuilder",
    "ProcessorConfig",
    "StripeConfig",
    "TotalpayConfig",
    "apply_logging",
    "create_payment_service",
    "create_processor",
    "load_configuration",
]
