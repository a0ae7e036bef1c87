import asyncio
import hashlib
import random
from datetime import timedelta
from typing import Any
import uuid

from paybridge.core.config import fake_logger
from paybridge.core.enums import (
    ChargeStatus,
    PaymentMethodType,
    ProcessorType,
    SubscriptionStatus,
)
from paybridge.core.exceptions.types import (
    ChargeNotFoundException,
    CustomerNotFoundException,
    PaymentException,
    PaymentMethodException,
    ProcessorException,
    SubscriptionNotFoundException,
    ValidationException,
    WebhookException,
)
from paybridge.core.services.payment.base import PaymentProcessor, WebhookPayload
from paybridge.core.services.payment.types import (
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
    utcnow,
)
from paybridge.core.services.payment.webhooks import verify_hmac_sha256

CARD_BRANDS = ("visa", "mastercard", "amex", "discover")
BILLING_PERIOD = timedelta(days=30)


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _fake_product_id(price_id: str) -> str:
    return f"fake_prod_{hashlib.sha1(price_id.encode('utf-8')).hexdigest()[:12]}"


class FakeProcessor(PaymentProcessor):
    """In-memory processor for tests and local development.

    Honours the full contract, including the default payment method
    invariant. ``simulate_delays`` and ``failure_rate`` emulate a slow or
    flaky provider; simulated failures raise ``ProcessorException`` with
    code ``simulated_failure``.
    """

    _logger = fake_logger

    def __init__(
        self,
        simulate_delays: bool = True,
        delay_seconds: float = 0.5,
        failure_rate: float = 0.0,
        webhook_secret: str | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValidationException(
                "failure_rate must be between 0.0 and 1.0",
                code="invalid_failure_rate",
                field_name="failure_rate",
                invalid_value=failure_rate,
            )
        self.simulate_delays = simulate_delays
        self.delay_seconds = delay_seconds
        self.failure_rate = failure_rate
        self._webhook_secret_value = webhook_secret
        self._random = rng or random.Random()

        self._customers: dict[str, Customer] = {}
        self._payment_methods: dict[str, PaymentMethod] = {}
        self._default_payment_methods: dict[str, str] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._charges: dict[str, Charge] = {}

    @property
    def processor_type(self) -> ProcessorType:
        return ProcessorType.FAKE

    @property
    def name(self) -> str:
        return "Fake"

    def reset(self) -> None:
        """Drop every stored entity."""
        self._customers.clear()
        self._payment_methods.clear()
        self._default_payment_methods.clear()
        self._subscriptions.clear()
        self._charges.clear()
        fake_logger.info("Fake processor storage reset")

    async def _begin(self, operation: str) -> None:
        fake_logger.debug(f"Fake processor: {operation}")
        if self.simulate_delays and self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.failure_rate > 0 and self._random.random() < self.failure_rate:
            raise ProcessorException(
                f"Simulated failure during {operation}",
                code="simulated_failure",
                processor_name=self.name,
            )

    def _require_customer(self, customer_id: str) -> Customer:
        customer = self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFoundException(
                "Customer not found", customer_id=customer_id
            )
        return customer

    def _require_payment_method(self, payment_method_id: str) -> PaymentMethod:
        payment_method = self._payment_methods.get(payment_method_id)
        if payment_method is None:
            raise PaymentMethodException("Payment method not found", code="not_found")
        return payment_method

    def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundException(
                "Subscription not found", subscription_id=subscription_id
            )
        return subscription

    def _has_live_subscription(self, customer_id: str) -> bool:
        return any(
            sub.customer_id == customer_id
            and sub.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
            for sub in self._subscriptions.values()
        )

    def _mark_default(self, customer_id: str, payment_method_id: str) -> None:
        for method_id, method in self._payment_methods.items():
            if method.customer_id == customer_id:
                self._payment_methods[method_id] = method.model_copy(
                    update={"is_default": method_id == payment_method_id}
                )
        self._default_payment_methods[customer_id] = payment_method_id

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def create_customer(
        self,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        self._validate_email(email)
        await self._begin("create_customer")
        now = utcnow()
        customer_id = _generate_id("fake_cus")
        customer = Customer(
            id=customer_id,
            email=email,
            name=name,
            phone=phone,
            processor=ProcessorType.FAKE,
            processor_customer_id=customer_id,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        self._customers[customer_id] = customer
        return customer

    async def get_customer(self, customer_id: str) -> Customer:
        await self._begin("get_customer")
        return self._require_customer(customer_id)

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        if email is not None:
            self._validate_email(email)
        await self._begin("update_customer")
        customer = self._require_customer(customer_id)
        updates: dict[str, Any] = {"updated_at": utcnow()}
        if email is not None:
            updates["email"] = email
        if name is not None:
            updates["name"] = name
        if phone is not None:
            updates["phone"] = phone
        if metadata:
            updates["metadata"] = {**customer.metadata, **metadata}
        updated = customer.model_copy(update=updates)
        self._customers[customer_id] = updated
        return updated

    async def delete_customer(self, customer_id: str) -> None:
        await self._begin("delete_customer")
        self._require_customer(customer_id)
        if self._has_live_subscription(customer_id):
            raise PaymentException(
                "Cannot delete customer with active subscriptions",
                code="has_active_subscriptions",
            )
        del self._customers[customer_id]
        self._payment_methods = {
            method_id: method
            for method_id, method in self._payment_methods.items()
            if method.customer_id != customer_id
        }
        self._default_payment_methods.pop(customer_id, None)

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        await self._begin("add_payment_method")
        self._require_customer(customer_id)
        if not payment_method_token:
            raise PaymentMethodException(
                "Payment method token cannot be empty", code="invalid_token"
            )

        is_first = customer_id not in self._default_payment_methods
        payment_method = PaymentMethod(
            id=_generate_id("fake_pm"),
            customer_id=customer_id,
            type=PaymentMethodType.CARD,
            last4=f"{self._random.randint(1000, 9999)}",
            brand=self._random.choice(CARD_BRANDS),
            expiry_month=self._random.randint(1, 12),
            expiry_year=utcnow().year + self._random.randint(1, 5),
            metadata={"token": payment_method_token},
        )
        self._payment_methods[payment_method.id] = payment_method
        if set_as_default or is_first:
            self._mark_default(customer_id, payment_method.id)
        return self._payment_methods[payment_method.id]

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        await self._begin("get_payment_method")
        return self._require_payment_method(payment_method_id)

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        await self._begin("list_payment_methods")
        self._require_customer(customer_id)
        return [
            method
            for method in self._payment_methods.values()
            if method.customer_id == customer_id
        ]

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        await self._begin("set_default_payment_method")
        self._require_customer(customer_id)
        payment_method = self._require_payment_method(payment_method_id)
        if payment_method.customer_id != customer_id:
            raise PaymentMethodException(
                "Payment method does not belong to customer",
                code="payment_method_mismatch",
            )
        self._mark_default(customer_id, payment_method_id)
        return self._payment_methods[payment_method_id]

    async def remove_payment_method(self, payment_method_id: str) -> None:
        await self._begin("remove_payment_method")
        payment_method = self._require_payment_method(payment_method_id)
        customer_id = payment_method.customer_id
        others = [
            method
            for method in self._payment_methods.values()
            if method.customer_id == customer_id and method.id != payment_method_id
        ]
        if payment_method.is_default and self._has_live_subscription(customer_id) and not others:
            raise PaymentMethodException(
                "Cannot remove the only payment method with active subscriptions",
                code="last_payment_method",
            )

        del self._payment_methods[payment_method_id]
        if self._default_payment_methods.get(customer_id) == payment_method_id:
            self._default_payment_methods.pop(customer_id)
            if others:
                self._mark_default(customer_id, others[0].id)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        await self._begin("create_subscription")
        self._require_customer(customer_id)

        if not trial_days:
            method_id = payment_method_id or self._default_payment_methods.get(customer_id)
            if method_id is None:
                raise PaymentMethodException(
                    "No default payment method found for customer",
                    code="no_default_payment_method",
                )
            self._require_payment_method(method_id)

        now = utcnow()
        if trial_days:
            trial_start, trial_end = now, now + timedelta(days=trial_days)
            period_end = trial_end
            status = SubscriptionStatus.TRIALING
        else:
            trial_start = trial_end = None
            period_end = now + BILLING_PERIOD
            status = SubscriptionStatus.ACTIVE

        subscription_id = _generate_id("fake_sub")
        subscription = Subscription(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            price_id=price_id,
            product_id=_fake_product_id(price_id),
            current_period_start=now,
            current_period_end=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            quantity=quantity,
            processor=ProcessorType.FAKE,
            processor_subscription_id=subscription_id,
            metadata=metadata or {},
        )
        self._subscriptions[subscription_id] = subscription
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        await self._begin("get_subscription")
        return self._require_subscription(subscription_id)

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        await self._begin("list_subscriptions")
        self._require_customer(customer_id)
        return [
            sub for sub in self._subscriptions.values() if sub.customer_id == customer_id
        ]

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        await self._begin("update_subscription")
        subscription = self._require_subscription(subscription_id)
        updates: dict[str, Any] = {}
        if price_id is not None:
            updates["price_id"] = price_id
            updates["product_id"] = _fake_product_id(price_id)
        if quantity is not None:
            updates["quantity"] = quantity
        if metadata:
            updates["metadata"] = {**subscription.metadata, **metadata}
        updated = subscription.model_copy(update=updates)
        self._subscriptions[subscription_id] = updated
        return updated

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        await self._begin("cancel_subscription")
        subscription = self._require_subscription(subscription_id)
        now = utcnow()
        if immediate:
            updates = {
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": now,
                "cancel_at_period_end": False,
            }
        else:
            updates = {"canceled_at": now, "cancel_at_period_end": True}
        updated = subscription.model_copy(update=updates)
        self._subscriptions[subscription_id] = updated
        return updated

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        await self._begin("resume_subscription")
        subscription = self._require_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.PAUSED:
            updates: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE}
        elif subscription.cancel_at_period_end:
            updates = {"canceled_at": None, "cancel_at_period_end": False}
        else:
            raise PaymentException(
                "Cannot resume a subscription that is neither paused nor scheduled for cancellation",
                code="invalid_subscription_state",
            )
        updated = subscription.model_copy(update=updates)
        self._subscriptions[subscription_id] = updated
        return updated

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        await self._begin("pause_subscription")
        subscription = self._require_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.PAUSED:
            return subscription
        if subscription.status == SubscriptionStatus.CANCELED:
            raise PaymentException(
                "Cannot pause a canceled subscription", code="invalid_subscription_state"
            )
        updated = subscription.model_copy(update={"status": SubscriptionStatus.PAUSED})
        self._subscriptions[subscription_id] = updated
        return updated

    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        await self._begin("swap_plan")
        subscription = self._require_subscription(subscription_id)
        updated = subscription.model_copy(
            update={
                "price_id": new_price_id,
                "product_id": _fake_product_id(new_price_id),
            }
        )
        self._subscriptions[subscription_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def create_charge(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str | None = None,
        payment_method_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Charge:
        self._validate_amount(amount)
        await self._begin("create_charge")
        self._require_customer(customer_id)
        method_id = payment_method_id or self._default_payment_methods.get(customer_id)
        if method_id is None:
            raise PaymentMethodException(
                "No default payment method found for customer",
                code="no_default_payment_method",
            )
        self._require_payment_method(method_id)

        charge_id = _generate_id("fake_ch")
        charge = Charge(
            id=charge_id,
            customer_id=customer_id,
            amount=amount,
            currency=currency,
            status=ChargeStatus.SUCCEEDED,
            description=description,
            receipt_url=f"https://fake-processor.example.com/receipt/{charge_id}",
            processor=ProcessorType.FAKE,
            processor_charge_id=charge_id,
            created_at=utcnow(),
            metadata=metadata or {},
        )
        self._charges[charge_id] = charge
        return charge

    async def get_charge(self, charge_id: str) -> Charge:
        await self._begin("get_charge")
        charge = self._charges.get(charge_id)
        if charge is None:
            raise ChargeNotFoundException("Charge not found", charge_id=charge_id)
        return charge

    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]:
        await self._begin("list_charges")
        if customer_id is not None:
            self._require_customer(customer_id)
        charges = [
            charge
            for charge in self._charges.values()
            if customer_id is None or charge.customer_id == customer_id
        ]
        charges.sort(key=lambda charge: charge.created_at, reverse=True)
        return charges[:limit]

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        await self._begin("refund_charge")
        charge = self._charges.get(charge_id)
        if charge is None:
            raise ChargeNotFoundException("Charge not found", charge_id=charge_id)

        refund_amount = self._ensure_refundable(charge, amount)
        total_refunded = charge.refunded_amount + refund_amount
        fully_refunded = total_refunded >= charge.amount
        metadata = dict(charge.metadata)
        if reason:
            metadata["refund_reason"] = reason
        updated = charge.model_copy(
            update={
                "refunded_amount": total_refunded,
                "refunded": fully_refunded,
                "status": ChargeStatus.REFUNDED if fully_refunded else charge.status,
                "metadata": metadata,
            }
        )
        self._charges[charge_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _webhook_secret(self) -> str | None:
        return self._webhook_secret_value

    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool:
        return verify_hmac_sha256(payload, signature, secret)

    async def handle_webhook(
        self, payload: WebhookPayload, signature: str | None = None
    ) -> WebhookEvent:
        await self._begin("handle_webhook")
        return await super().handle_webhook(payload, signature)

    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent:
        event_type = data.get("type")
        if not event_type:
            raise WebhookException("Webhook event type is missing", code="missing_event_type")
        return WebhookEvent(
            id=str(data.get("id") or _generate_id("fake_evt")),
            type=event_type,
            processor=ProcessorType.FAKE,
            data=data,
            created_at=data.get("created") or utcnow(),
        )
