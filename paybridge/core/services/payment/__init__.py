"""
Payment processor adapters.

This package contains one adapter per supported processor, all implementing
the ``PaymentProcessor`` contract:
- StripeProcessor: Stripe REST API
- PaddleProcessor: Paddle Classic and Billing APIs
- BraintreeProcessor: Braintree gateway REST API
- LemonSqueezyProcessor: Lemon Squeezy JSON:API
- TotalpayProcessor: Totalpay Global (webhooks and request signing only)
- FakeProcessor: In-memory processor for tests and local development

Example usage:
    from paybridge.core.services.payment import FakeProcessor

    processor = FakeProcessor(simulate_delays=False)
    customer = await processor.create_customer("a@b.com")
"""

from paybridge.core.services.payment.base import (
    HTTPPaymentProcessor,
    PaymentProcessor,
)
from paybridge.core.services.payment.braintree.main import BraintreeProcessor
from paybridge.core.services.payment.fake.main import FakeProcessor
from paybridge.core.services.payment.lemon_squeezy.main import LemonSqueezyProcessor
from paybridge.core.services.payment.paddle.main import PaddleProcessor
from paybridge.core.services.payment.stripe.main import StripeProcessor
from paybridge.core.services.payment.totalpay.main import TotalpayProcessor
from paybridge.core.services.payment.types import (
    Address,
    BillingDetails,
    Charge,
    Customer,
    PaymentMethod,
    Price,
    Subscription,
    WebhookEvent,
)

__all__ = [
    # Contract
    "PaymentProcessor",
    "HTTPPaymentProcessor",
    # Adapters
    "BraintreeProcessor",
    "FakeProcessor",
    "LemonSqueezyProcessor",
    "PaddleProcessor",
    "StripeProcessor",
    "TotalpayProcessor",
    # Entities
    "Address",
    "BillingDetails",
    "Charge",
    "Customer",
    "PaymentMethod",
    "Price",
    "Subscription",
    "WebhookEvent",
]
