from enum import Enum


class ProcessorType(str, Enum):
    """Supported payment processors."""

    STRIPE = "stripe"
    PADDLE = "paddle"
    BRAINTREE = "braintree"
    LEMON_SQUEEZY = "lemon_squeezy"
    TOTALPAY_GLOBAL = "totalpay_global"
    FAKE = "fake"


class ProviderEnvironment(str, Enum):
    """Environment of a processor account."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"


class SubscriptionStatus(str, Enum):
    """Canonical status of a subscription.

    Transitions: incomplete -> trialing/active -> past_due/canceled/paused;
    past_due -> active/canceled; paused -> active. Canceled is terminal.
    """

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    PAUSED = "paused"


class ChargeStatus(str, Enum):
    """Canonical status of a one-time charge."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethodType(str, Enum):
    """Type of a stored payment method."""

    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"


class BillingInterval(str, Enum):
    """Billing interval of a price."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ONE_TIME = "one_time"
