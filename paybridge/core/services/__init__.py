from paybridge.core.services.configuration import (
    BraintreeConfig,
    FakeConfig,
    LemonSqueezyConfig,
    PaddleConfig,
    PaymentConfiguration,
    PaymentConfigurationBuilder,
    ProcessorConfig,
    StripeConfig,
    TotalpayConfig,
    create_payment_service,
    create_processor,
    load_configuration,
)
from paybridge.core.services.payment_service import PaymentService
from paybridge.core.services.storage import (
    MemoryStorage,
    RedisStorage,
    Storage,
    create_storage,
)

__all__ = [
    # Core services
    "PaymentService",
    # Configuration
    "BraintreeConfig",
    "FakeConfig",
    "LemonSqueezyConfig",
    "PaddleConfig",
    "PaymentConfiguration",
    "PaymentConfigurationBuilder",
    "ProcessorConfig",
    "StripeConfig",
    "TotalpayConfig",
    "create_payment_service",
    "create_processor",
    "load_configuration",
    # Storage
    "MemoryStorage",
    "RedisStorage",
    "Storage",
    "create_storage",
]
