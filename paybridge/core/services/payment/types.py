from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, BeforeValidator, Field, computed_field, field_validator

from paybridge.core.enums import (
    BillingInterval,
    ChargeStatus,
    PaymentMethodType,
    ProcessorType,
    SubscriptionStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_timestamp_to_datetime(ts: Any) -> Any:
    """Converts a Unix timestamp (in seconds) or ISO string to an aware datetime."""
    if isinstance(ts, bool):
        return ts
    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    if isinstance(ts, str):
        try:
            parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            return ts
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(ts, datetime) and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


Timestamp = Annotated[datetime, BeforeValidator(coerce_timestamp_to_datetime)]


class Customer(BaseModel):
    id: str
    email: Annotated[str, Field(min_length=1)]
    name: str | None = None
    phone: str | None = None
    processor: ProcessorType
    processor_customer_id: str
    metadata: dict[str, Any] = {}
    created_at: Timestamp
    updated_at: Timestamp


class Address(BaseModel):
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


class BillingDetails(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Address | None = None


class PaymentMethod(BaseModel):
    id: str
    customer_id: str
    type: PaymentMethodType
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    is_default: bool = False
    billing_details: BillingDetails | None = None
    metadata: dict[str, Any] = {}


class Subscription(BaseModel):
    """Canonical subscription.

    ``cancel_at_period_end`` is orthogonal to ``status``: an active or
    trialing subscription with the flag set moves to canceled at
    ``current_period_end``.
    """

    id: str
    customer_id: str
    status: SubscriptionStatus
    price_id: str
    product_id: str | None = None
    current_period_start: Timestamp
    current_period_end: Timestamp
    trial_start: Timestamp | None = None
    trial_end: Timestamp | None = None
    canceled_at: Timestamp | None = None
    cancel_at_period_end: bool = False
    quantity: int = 1
    processor: ProcessorType
    processor_subscription_id: str
    metadata: dict[str, Any] = {}

    # Past due subscriptions keep access for this many days after period end
    GRACE_PERIOD_DAYS: ClassVar[int] = 7

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_on_trial(self) -> bool:
        if self.status != SubscriptionStatus.TRIALING:
            return False
        if self.trial_end is None:
            return True
        return utcnow() < self.trial_end

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    @property
    def is_on_grace_period(self) -> bool:
        """Cancellation is scheduled but the paid period has not ended yet."""
        if not self.cancel_at_period_end:
            return False
        return utcnow() < self.current_period_end

    @property
    def days_until_due(self) -> int | None:
        """Days left in the past-due grace window, negative once overdue."""
        if self.status != SubscriptionStatus.PAST_DUE:
            return None
        days_overdue = (utcnow() - self.current_period_end).days
        return self.GRACE_PERIOD_DAYS - days_overdue

    @property
    def trial_duration(self) -> timedelta | None:
        if self.trial_start is None or self.trial_end is None:
            return None
        return self.trial_end - self.trial_start


class Charge(BaseModel):
    id: str
    customer_id: str
    amount: Annotated[int, Field(ge=0, description="Amount in minor currency units.")]
    currency: str
    status: ChargeStatus
    description: str | None = None
    receipt_url: str | None = None
    refunded: bool = False
    refunded_amount: Annotated[int, Field(ge=0)] = 0
    processor: ProcessorType
    processor_charge_id: str
    created_at: Timestamp
    metadata: dict[str, Any] = {}

    @field_validator("currency")
    @classmethod
    def _lowercase_currency(cls, value: str) -> str:
        return value.lower()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def refundable_amount(self) -> int:
        return max(0, self.amount - self.refunded_amount)


class WebhookEvent(BaseModel):
    id: str
    type: Annotated[
        str, Field(description="Provider-native event name, not normalized.")
    ]
    processor: ProcessorType
    data: dict[str, Any] = {}
    created_at: Timestamp


class Price(BaseModel):
    id: str
    product_id: str
    amount: int
    currency: str
    interval: BillingInterval
    interval_count: int = 1
    trial_days: int | None = None
    active: bool = True
    processor_price_id: str
    processor: ProcessorType
    metadata: dict[str, Any] = {}

    @field_validator("currency")
    @classmethod
    def _lowercase_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def is_recurring(self) -> bool:
        return self.interval != BillingInterval.ONE_TIME


__all__ = [
    "Address",
    "BillingDetails",
    "Charge",
    "Customer",
    "PaymentMethod",
    "Price",
    "Subscription",
    "Timestamp",
    "WebhookEvent",
    "coerce_timestamp_to_datetime",
    "utcnow",
]
