from datetime import timedelta
from typing import Any

import httpx

from paybridge.core.config import lemon_squeezy_logger
from paybridge.core.enums import (
    ChargeStatus,
    PaymentMethodType,
    ProcessorType,
    SubscriptionStatus,
)
from paybridge.core.exceptions.types import (
    AuthenticationException,
    InvalidConfigurationException,
    WebhookException,
)
from paybridge.core.services.payment.base import (
    HTTPPaymentProcessor,
    new_idempotency_key,
)
from paybridge.core.services.payment.types import (
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
    utcnow,
)
from paybridge.core.services.payment.webhooks import verify_hmac_sha256

JSON_API_CONTENT_TYPE = "application/vnd.api+json"

SUBSCRIPTION_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.TRIALING,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}

ORDER_STATUS_MAP: dict[str, ChargeStatus] = {
    "paid": ChargeStatus.SUCCEEDED,
    "pending": ChargeStatus.PENDING,
    "failed": ChargeStatus.FAILED,
    "refunded": ChargeStatus.REFUNDED,
    "partial_refund": ChargeStatus.SUCCEEDED,
}


def map_subscription_status(status: str | None) -> SubscriptionStatus:
    return SUBSCRIPTION_STATUS_MAP.get((status or "").lower(), SubscriptionStatus.INCOMPLETE)


def flatten_resource(resource: dict[str, Any]) -> dict[str, Any]:
    """Flatten a JSON:API resource into ``{id, type, **attributes, relationships}``.

    Relationships are reduced to the related id (or list of ids).
    """
    relationships: dict[str, Any] = {}
    for key, value in (resource.get("relationships") or {}).items():
        related = value.get("data") if isinstance(value, dict) else None
        if isinstance(related, dict):
            relationships[key] = related.get("id")
        elif isinstance(related, list):
            relationships[key] = [item.get("id") for item in related if isinstance(item, dict)]

    flat = {
        "id": resource.get("id"),
        "type": resource.get("type"),
        **(resource.get("attributes") or {}),
    }
    if relationships:
        flat["relationships"] = relationships
    return flat


def _single(body: dict[str, Any]) -> dict[str, Any]:
    data = body.get("data")
    if isinstance(data, dict):
        return flatten_resource(data)
    return body


def _many(body: dict[str, Any]) -> list[dict[str, Any]]:
    return [flatten_resource(item) for item in body.get("data") or [] if isinstance(item, dict)]


def _related_id(data: dict[str, Any], name: str) -> str:
    related = (data.get("relationships") or {}).get(name)
    if related:
        return str(related)
    value = data.get(f"{name}_id")
    return str(value) if value is not None else ""


def _variant_id(value: str) -> int | str:
    return int(value) if value.isdigit() else value


class LemonSqueezyProcessor(HTTPPaymentProcessor):
    """Lemon Squeezy adapter over its JSON:API.

    New subscriptions and one-time purchases only happen through hosted
    checkout, and payment methods are attached to individual subscriptions.
    """

    _logger = lemon_squeezy_logger

    def __init__(
        self,
        api_key: str,
        store_id: str,
        webhook_secret: str | None = None,
        *,
        base_url: str = "https://api.lemonsqueezy.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        if not api_key:
            raise InvalidConfigurationException(
                "Lemon Squeezy API key is required", field_name="lemon_squeezy_api_key"
            )
        if not store_id:
            raise InvalidConfigurationException(
                "Lemon Squeezy store ID is required", field_name="lemon_squeezy_store_id"
            )
        self._api_key = api_key
        self._store_id = store_id
        self._webhook_secret_value = webhook_secret
        self._base_url = base_url

    @property
    def processor_type(self) -> ProcessorType:
        return ProcessorType.LEMON_SQUEEZY

    @property
    def name(self) -> str:
        return "Lemon Squeezy"

    @property
    def base_url(self) -> str:
        return self._base_url

    def _default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": JSON_API_CONTENT_TYPE,
            "Content-Type": JSON_API_CONTENT_TYPE,
        }

    def _extract_error(
        self, body: dict[str, Any], status: int
    ) -> tuple[str, str | None, str | None]:
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict):
            first = errors[0]
            message = first.get("detail") or first.get("title") or f"Lemon Squeezy API error {status}"
            pointer = (first.get("source") or {}).get("pointer")
            field = pointer.rsplit("/", 1)[-1] if pointer else None
            code = first.get("code")
            return message, str(code) if code is not None else None, field
        return body.get("message") or f"Lemon Squeezy API error {status}", None, None

    async def validate_configuration(self) -> bool:
        try:
            await self._request("GET", "/v1/users/me")
        except AuthenticationException as exc:
            raise InvalidConfigurationException(
                "Invalid Lemon Squeezy API key", code="invalid_api_key"
            ) from exc
        return True

    @staticmethod
    def build_checkout_url(variant_id: str) -> str:
        return f"https://checkout.lemonsqueezy.com/checkout/buy/{variant_id}"

    def _subscription_patch(self, subscription_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        return {
            "data": {
                "type": "subscriptions",
                "id": subscription_id,
                "attributes": attributes,
            }
        }

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        customer_id = str(data.get("id") or "")
        metadata = {
            key: data[key]
            for key in ("status", "city", "region", "country")
            if data.get(key) is not None
        }
        return Customer(
            id=customer_id,
            email=self._customer_email(data.get("email"), customer_id),
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType.LEMON_SQUEEZY,
            processor_customer_id=customer_id,
            metadata=metadata,
            created_at=data.get("created_at") or utcnow(),
            updated_at=data.get("updated_at") or data.get("created_at") or utcnow(),
        )

    def _map_subscription(self, data: dict[str, Any]) -> Subscription:
        now = utcnow()
        created_at = data.get("created_at") or now
        period_end = data.get("renews_at") or data.get("ends_at") or now + timedelta(days=30)
        trial_end = data.get("trial_ends_at")
        status = map_subscription_status(data.get("status"))
        metadata = {
            key: data[key]
            for key in ("card_brand", "card_last_four", "billing_anchor", "urls")
            if data.get(key) is not None
        }
        if data.get("pause"):
            metadata["pause"] = data["pause"]
        return Subscription(
            id=str(data.get("id") or ""),
            customer_id=_related_id(data, "customer"),
            status=status,
            price_id=_related_id(data, "variant"),
            product_id=_related_id(data, "product") or None,
            current_period_start=created_at,
            current_period_end=period_end,
            trial_start=created_at if trial_end else None,
            trial_end=trial_end,
            canceled_at=data.get("ends_at") if data.get("cancelled") else None,
            cancel_at_period_end=bool(data.get("cancelled")) and status != SubscriptionStatus.CANCELED,
            quantity=1,
            processor=ProcessorType.LEMON_SQUEEZY,
            processor_subscription_id=str(data.get("id") or ""),
            metadata=metadata,
        )

    def _map_order(self, data: dict[str, Any]) -> Charge:
        status = ORDER_STATUS_MAP.get(str(data.get("status") or "").lower(), ChargeStatus.PENDING)
        total = int(data.get("total") or 0)
        refunded_amount = int(data.get("refunded_amount") or 0)
        if status == ChargeStatus.REFUNDED and not refunded_amount:
            refunded_amount = total
        metadata = {
            key: data[key]
            for key in ("order_number", "tax", "discount_total", "subtotal", "urls")
            if data.get(key) is not None
        }
        return Charge(
            id=str(data.get("id") or ""),
            customer_id=_related_id(data, "customer"),
            amount=total,
            currency=data.get("currency") or "usd",
            status=status,
            description=(data.get("first_order_item") or {}).get("product_name"),
            receipt_url=(data.get("urls") or {}).get("receipt"),
            refunded=status == ChargeStatus.REFUNDED,
            refunded_amount=refunded_amount,
            processor=ProcessorType.LEMON_SQUEEZY,
            processor_charge_id=str(data.get("id") or ""),
            created_at=data.get("created_at") or utcnow(),
            metadata=metadata,
        )

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
        attributes: dict[str, Any] = {"email": email}
        if name is not None:
            attributes["name"] = name
        body = await self._request(
            "POST",
            "/v1/customers",
            json_body={
                "data": {
                    "type": "customers",
                    "attributes": attributes,
                    "relationships": {
                        "store": {"data": {"type": "stores", "id": self._store_id}}
                    },
                }
            },
        )
        return self._map_customer(_single(body))

    async def get_customer(self, customer_id: str) -> Customer:
        body = await self._request("GET", f"/v1/customers/{customer_id}")
        return self._map_customer(_single(body))

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        attributes: dict[str, Any] = {}
        if email is not None:
            self._validate_email(email)
            attributes["email"] = email
        if name is not None:
            attributes["name"] = name
        body = await self._request(
            "PATCH",
            f"/v1/customers/{customer_id}",
            json_body={
                "data": {"type": "customers", "id": customer_id, "attributes": attributes}
            },
        )
        return self._map_customer(_single(body))

    async def delete_customer(self, customer_id: str) -> None:
        # Customers cannot be deleted, only archived
        await self._request(
            "PATCH",
            f"/v1/customers/{customer_id}",
            json_body={
                "data": {
                    "type": "customers",
                    "id": customer_id,
                    "attributes": {"status": "archived"},
                }
            },
        )

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        raise self._unsupported(
            "attaching payment methods",
            "Payment methods are collected during checkout.",
        )

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        raise self._unsupported(
            "payment method retrieval",
            "Card details are included with each subscription.",
        )

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        subscriptions = await self.list_subscriptions(customer_id)
        methods: list[PaymentMethod] = []
        seen: set[tuple[str, str]] = set()
        for subscription in subscriptions:
            last4 = subscription.metadata.get("card_last_four")
            if not last4:
                continue
            brand = subscription.metadata.get("card_brand") or ""
            if (brand, last4) in seen:
                continue
            seen.add((brand, last4))
            methods.append(
                PaymentMethod(
                    id=subscription.id,
                    customer_id=customer_id,
                    type=PaymentMethodType.CARD,
                    last4=last4,
                    brand=brand or None,
                    is_default=not methods,
                    metadata={"subscription_id": subscription.id},
                )
            )
        return methods

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        raise self._unsupported(
            "default payment method selection",
            "Each subscription keeps its own payment method.",
        )

    async def remove_payment_method(self, payment_method_id: str) -> None:
        raise self._unsupported(
            "payment method removal",
            "Payment methods are removed when their subscription ends.",
        )

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
        raise self._unsupported(
            "direct subscription creation",
            f"Use the checkout URL: {self.build_checkout_url(price_id)}",
        )

    async def get_subscription(self, subscription_id: str) -> Subscription:
        body = await self._request("GET", f"/v1/subscriptions/{subscription_id}")
        return self._map_subscription(_single(body))

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        body = await self._request(
            "GET",
            "/v1/subscriptions",
            params={
                "filter[customer_id]": customer_id,
                "filter[store_id]": self._store_id,
            },
        )
        return [self._map_subscription(item) for item in _many(body)]

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        attributes: dict[str, Any] = {}
        if price_id is not None:
            attributes["variant_id"] = _variant_id(price_id)
        body = await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json_body=self._subscription_patch(subscription_id, attributes),
        )
        return self._map_subscription(_single(body))

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        previous = None if immediate else await self.get_subscription(subscription_id)
        body = await self._request("DELETE", f"/v1/subscriptions/{subscription_id}")
        subscription = self._map_subscription(_single(body))
        if immediate:
            return subscription.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": subscription.canceled_at or utcnow(),
                    "cancel_at_period_end": False,
                }
            )
        # The provider reports "cancelled" for the whole grace period
        return subscription.model_copy(
            update={"status": previous.status, "cancel_at_period_end": True}
        )

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        body = await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json_body=self._subscription_patch(
                subscription_id, {"cancelled": False, "pause": None}
            ),
        )
        return self._map_subscription(_single(body))

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        body = await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json_body=self._subscription_patch(subscription_id, {"pause": {"mode": "void"}}),
        )
        return self._map_subscription(_single(body))

    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        attributes: dict[str, Any] = {
            "variant_id": _variant_id(new_price_id),
            "invoice_immediately": prorate,
        }
        if not prorate:
            attributes["disable_prorations"] = True
        body = await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json_body=self._subscription_patch(subscription_id, attributes),
        )
        return self._map_subscription(_single(body))

    # ------------------------------------------------------------------
    # Charges (orders)
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
        raise self._unsupported(
            "direct charges", "One-time purchases are created through product checkouts."
        )

    async def get_charge(self, charge_id: str) -> Charge:
        body = await self._request("GET", f"/v1/orders/{charge_id}")
        return self._map_order(_single(body))

    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]:
        params: dict[str, Any] = {
            "page[size]": limit,
            "filter[store_id]": self._store_id,
        }
        if customer_id is not None:
            params["filter[customer_id]"] = customer_id
        body = await self._request("GET", "/v1/orders", params=params)
        return [self._map_order(item) for item in _many(body)]

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        raise self._unsupported(
            "API refunds", "Refunds are issued from the Lemon Squeezy dashboard."
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _webhook_secret(self) -> str | None:
        return self._webhook_secret_value

    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool:
        return verify_hmac_sha256(payload, signature, secret)

    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent:
        meta = data.get("meta") or {}
        event_name = meta.get("event_name")
        if not event_name:
            raise WebhookException(
                "Webhook event name is missing", code="missing_event_type"
            )
        resource = data.get("data") or {}
        created_at = (resource.get("attributes") or {}).get("updated_at") or utcnow()
        return WebhookEvent(
            id=str(meta.get("webhook_id") or new_idempotency_key()),
            type=event_name,
            processor=ProcessorType.LEMON_SQUEEZY,
            data=data,
            created_at=created_at,
        )
