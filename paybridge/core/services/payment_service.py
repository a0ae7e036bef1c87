"""
Payment orchestration service.

``PaymentService`` binds one processor to one customer and caches the
customer, their subscriptions and their default payment method in a
``Storage`` backend. Transient network failures are retried with
exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import TypeAdapter

from paybridge.core.config import payment_logger
from paybridge.core.enums import SubscriptionStatus
from paybridge.core.exceptions.types import (
    CustomerNotFoundException,
    NetworkException,
    PaymentException,
)
from paybridge.core.services.payment.base import PaymentProcessor
from paybridge.core.services.payment.types import (
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
)
from paybridge.core.services.storage import Storage

T = TypeVar("T")

CUSTOMER_ID_KEY = "payment_service_customer_id"
CUSTOMER_DATA_KEY = "payment_service_customer_data"
SUBSCRIPTIONS_KEY = "payment_service_subscriptions"
DEFAULT_PAYMENT_METHOD_KEY = "payment_service_default_payment_method"

_subscription_list = TypeAdapter(list[Subscription])

# Statuses that grant access to a subscribed product
_LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class PaymentService:
    """
    Customer-scoped facade over a ``PaymentProcessor``.

    Every operation except ``initialize``, ``is_initialized``,
    ``get_current_customer``, ``handle_webhook``, ``clear_cache`` and
    ``aclose`` needs a customer, so call ``initialize`` first.

    Example:
        >>> service = PaymentService(FakeProcessor(), MemoryStorage())
        >>> await service.initialize("a@b.com")
        >>> await service.set_default_payment_method("tok_1")
        >>> sub = await service.subscribe("plan_pro", trial_days=14)
        >>> sub.status
        <SubscriptionStatus.TRIALING: 'trialing'>
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        storage: Storage,
        retry_attempts: int = 3,
        retry_base_delay: float = 2.0,
    ):
        self.processor = processor
        self.storage = storage
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _retry_on_network_error(
        self, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Run ``operation``, retrying only on ``NetworkException``.

        Sleeps ``retry_base_delay * 2 ** (attempt - 1)`` seconds between
        attempts. The last failure propagates unchanged.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except NetworkException as e:
                if attempt >= self.retry_attempts:
                    payment_logger.error(
                        f"Network error after {attempt} attempts, giving up: {e}"
                    )
                    raise
                wait = self.retry_base_delay * (2 ** (attempt - 1))
                payment_logger.warning(
                    f"Network error on attempt {attempt}/{self.retry_attempts}, "
                    f"retrying in {wait}s: {e}"
                )
                await asyncio.sleep(wait)
                attempt += 1

    async def _require_customer_id(self) -> str:
        customer_id = await self.storage.get(CUSTOMER_ID_KEY)
        if not customer_id:
            raise PaymentException(
                "Payment service not initialized. Call initialize() first.",
                code="not_initialized",
            )
        return customer_id

    async def _cache_customer(self, customer: Customer) -> None:
        await self.storage.set(CUSTOMER_ID_KEY, customer.id)
        await self.storage.set(CUSTOMER_DATA_KEY, customer.model_dump_json())

    async def _invalidate_subscriptions(self) -> None:
        await self.storage.remove(SUBSCRIPTIONS_KEY)

    # ------------------------------------------------------------------
    # Customer
    # ------------------------------------------------------------------

    async def initialize(
        self, email: str, name: str | None = None, phone: str | None = None
    ) -> Customer:
        """
        Bind the service to a customer, creating one at the processor if needed.

        Args:
            email: Customer email, used only when a new customer is created.
            name: Optional display name.
            phone: Optional phone number.

        Returns:
            Customer: The cached or newly created customer.
        """
        cached_id = await self.storage.get(CUSTOMER_ID_KEY)
        if cached_id:
            try:
                customer = await self._retry_on_network_error(
                    lambda: self.processor.get_customer(cached_id)
                )
                await self._cache_customer(customer)
                payment_logger.info(f"Payment service resumed for customer {customer.id}")
                return customer
            except CustomerNotFoundException:
                payment_logger.warning(
                    f"Cached customer {cached_id} no longer exists, creating a new one"
                )
                await self.clear_cache()
                await self.storage.remove(CUSTOMER_ID_KEY)

        customer = await self._retry_on_network_error(
            lambda: self.processor.create_customer(email=email, name=name, phone=phone)
        )
        await self._cache_customer(customer)
        payment_logger.info(
            f"Payment service initialized with {self.processor.name} customer {customer.id}"
        )
        return customer

    async def is_initialized(self) -> bool:
        return await self.storage.contains_key(CUSTOMER_ID_KEY)

    async def get_current_customer(self) -> Customer | None:
        data = await self.storage.get(CUSTOMER_DATA_KEY)
        if data is None:
            return None
        return Customer.model_validate_json(data)

    async def refresh_customer(self) -> Customer:
        customer_id = await self._require_customer_id()
        customer = await self._retry_on_network_error(
            lambda: self.processor.get_customer(customer_id)
        )
        await self._cache_customer(customer)
        return customer

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def set_default_payment_method(self, payment_method_token: str) -> PaymentMethod:
        """Attach ``payment_method_token`` as the customer's default method."""
        customer_id = await self._require_customer_id()
        method = await self._retry_on_network_error(
            lambda: self.processor.add_payment_method(
                customer_id, payment_method_token, set_as_default=True
            )
        )
        await self._cache_default_payment_method(method)
        return method

    async def _cache_default_payment_method(self, method: PaymentMethod) -> None:
        await self.storage.set(DEFAULT_PAYMENT_METHOD_KEY, method.model_dump_json())

    async def _cached_default_payment_method(self) -> PaymentMethod | None:
        data = await self.storage.get(DEFAULT_PAYMENT_METHOD_KEY)
        if data is None:
            return None
        return PaymentMethod.model_validate_json(data)

    async def get_default_payment_method(self) -> PaymentMethod | None:
        customer_id = await self._require_customer_id()
        cached = await self._cached_default_payment_method()
        if cached is not None:
            return cached
        methods = await self._retry_on_network_error(
            lambda: self.processor.list_payment_methods(customer_id)
        )
        for method in methods:
            if method.is_default:
                await self._cache_default_payment_method(method)
                return method
        return None

    async def get_payment_methods(self) -> list[PaymentMethod]:
        customer_id = await self._require_customer_id()
        methods = await self._retry_on_network_error(
            lambda: self.processor.list_payment_methods(customer_id)
        )
        for method in methods:
            if method.is_default:
                await self._cache_default_payment_method(method)
                break
        return methods

    async def remove_payment_method(self, payment_method_id: str) -> None:
        await self._require_customer_id()
        await self._retry_on_network_error(
            lambda: self.processor.remove_payment_method(payment_method_id)
        )
        cached = await self._cached_default_payment_method()
        if cached is not None and cached.id == payment_method_id:
            await self.storage.remove(DEFAULT_PAYMENT_METHOD_KEY)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        price_id: str,
        payment_method_token: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """
        Subscribe the customer to ``price_id``.

        Args:
            price_id: Processor price or plan identifier.
            payment_method_token: When given, attached as the default method first.
            trial_days: Optional trial length.
            quantity: Seat count.
            metadata: Extra metadata stored on the subscription.

        Returns:
            Subscription: The created subscription.
        """
        customer_id = await self._require_customer_id()
        payment_method_id = None
        if payment_method_token:
            method = await self.set_default_payment_method(payment_method_token)
            payment_method_id = method.id

        subscription = await self._retry_on_network_error(
            lambda: self.processor.create_subscription(
                customer_id,
                price_id,
                payment_method_id=payment_method_id,
                trial_days=trial_days,
                quantity=quantity,
                metadata=metadata,
            )
        )
        await self._invalidate_subscriptions()
        payment_logger.info(
            f"Customer {customer_id} subscribed to {price_id} ({subscription.status.value})"
        )
        return subscription

    async def get_subscriptions(self) -> list[Subscription]:
        customer_id = await self._require_customer_id()
        cached = await self.storage.get(SUBSCRIPTIONS_KEY)
        if cached is not None:
            return _subscription_list.validate_json(cached)
        return await self._fetch_subscriptions(customer_id)

    async def refresh_subscriptions(self) -> list[Subscription]:
        customer_id = await self._require_customer_id()
        return await self._fetch_subscriptions(customer_id)

    async def _fetch_subscriptions(self, customer_id: str) -> list[Subscription]:
        subscriptions = await self._retry_on_network_error(
            lambda: self.processor.list_subscriptions(customer_id)
        )
        await self.storage.set(
            SUBSCRIPTIONS_KEY,
            json.dumps([s.model_dump(mode="json") for s in subscriptions]),
        )
        return subscriptions

    async def get_active_subscription(
        self, product_id: str | None = None
    ) -> Subscription | None:
        """First active or trialing subscription, optionally for one product."""
        for subscription in await self.get_subscriptions():
            if subscription.status not in _LIVE_STATUSES:
                continue
            if product_id is not None and subscription.product_id != product_id:
                continue
            return subscription
        return None

    async def has_active_subscription(self, product_id: str | None = None) -> bool:
        return await self.get_active_subscription(product_id) is not None

    async def is_on_trial(self) -> bool:
        return any(s.is_on_trial for s in await self.get_subscriptions())

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        await self._require_customer_id()
        subscription = await self._retry_on_network_error(
            lambda: self.processor.cancel_subscription(subscription_id, immediate=immediate)
        )
        await self._invalidate_subscriptions()
        payment_logger.info(
            f"Subscription {subscription_id} canceled "
            f"({'immediately' if immediate else 'at period end'})"
        )
        return subscription

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        await self._require_customer_id()
        subscription = await self._retry_on_network_error(
            lambda: self.processor.resume_subscription(subscription_id)
        )
        await self._invalidate_subscriptions()
        return subscription

    async def change_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        """Move a subscription to ``new_price_id``, swapping natively when supported."""
        await self._require_customer_id()
        if self.processor.supports_plan_swapping:
            operation = lambda: self.processor.swap_plan(  # noqa: E731
                subscription_id, new_price_id, prorate=prorate
            )
        else:
            operation = lambda: self.processor.update_subscription(  # noqa: E731
                subscription_id, price_id=new_price_id
            )
        subscription = await self._retry_on_network_error(operation)
        await self._invalidate_subscriptions()
        return subscription

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def make_payment(
        self,
        amount: int,
        currency: str,
        description: str | None = None,
        payment_method_token: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Charge:
        """
        Charge the customer once.

        Args:
            amount: Amount in minor currency units.
            currency: ISO currency code.
            description: Optional statement description.
            payment_method_token: When given, attached as the default method first.
            metadata: Extra metadata stored on the charge.

        Returns:
            Charge: The created charge.
        """
        customer_id = await self._require_customer_id()
        payment_method_id = None
        if payment_method_token:
            method = await self.set_default_payment_method(payment_method_token)
            payment_method_id = method.id

        charge = await self._retry_on_network_error(
            lambda: self.processor.create_charge(
                customer_id,
                amount,
                currency,
                description=description,
                payment_method_id=payment_method_id,
                metadata=metadata,
            )
        )
        payment_logger.info(
            f"Charge {charge.id} for {amount} {currency} ({charge.status.value})"
        )
        return charge

    async def get_payment_history(self, limit: int = 10) -> list[Charge]:
        customer_id = await self._require_customer_id()
        return await self._retry_on_network_error(
            lambda: self.processor.list_charges(customer_id=customer_id, limit=limit)
        )

    # ------------------------------------------------------------------
    # Webhooks and lifecycle
    # ------------------------------------------------------------------

    async def handle_webhook(
        self, payload: str | bytes, signature: str | None = None
    ) -> WebhookEvent:
        return await self.processor.handle_webhook(payload, signature)

    async def clear_cache(self) -> None:
        """Drop cached customer data. The customer binding is kept, so later calls refetch."""
        for key in (
            CUSTOMER_DATA_KEY,
            SUBSCRIPTIONS_KEY,
            DEFAULT_PAYMENT_METHOD_KEY,
        ):
            await self.storage.remove(key)
        payment_logger.info("Payment service cache cleared")

    async def aclose(self) -> None:
        await self.processor.aclose()


__all__ = [
    "CUSTOMER_DATA_KEY",
    "CUSTOMER_ID_KEY",
    "DEFAULT_PAYMENT_METHOD_KEY",
    "PaymentService",
    "SUBSCRIPTIONS_KEY",
]
