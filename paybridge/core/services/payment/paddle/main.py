import json
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from paybridge.core.config import paddle_logger
from paybridge.core.enums import (
    ChargeStatus,
    PaymentMethodType,
    ProcessorType,
    ProviderEnvironment,
    SubscriptionStatus,
)
from paybridge.core.exceptions.types import (
    AuthenticationException,
    InvalidConfigurationException,
    ProcessorException,
    SubscriptionNotFoundException,
    WebhookException,
)
from paybridge.core.services.payment.base import (
    HTTPPaymentProcessor,
    WebhookPayload,
    new_idempotency_key,
    to_major_units,
    to_minor_units,
)
from paybridge.core.services.payment.types import (
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
    utcnow,
)
from paybridge.core.services.payment.webhooks import (
    parse_payload_fields,
    verify_sorted_fields,
)

SUBSCRIPTION_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "deleted": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
}

CHARGE_STATUS_MAP: dict[str, ChargeStatus] = {
    "completed": ChargeStatus.SUCCEEDED,
    "success": ChargeStatus.SUCCEEDED,
    "pending": ChargeStatus.PENDING,
    "refunded": ChargeStatus.REFUNDED,
    "failed": ChargeStatus.FAILED,
}

# Classic API codes meaning the vendor credentials were rejected
_AUTH_ERROR_CODES = {"107", "108"}


def map_subscription_status(status: str | None) -> SubscriptionStatus:
    return SUBSCRIPTION_STATUS_MAP.get((status or "").lower(), SubscriptionStatus.INCOMPLETE)


def _passthrough(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {"passthrough": value}
    return parsed if isinstance(parsed, dict) else {"passthrough": value}


class PaddleProcessor(HTTPPaymentProcessor):
    """Paddle adapter.

    Customers and subscription listing use the Billing API; everything else
    uses the Classic vendor API. Subscriptions and one-time payments are
    started through Paddle Checkout, so ``create_subscription`` and
    ``create_charge`` return ``incomplete``/``pending`` entities carrying a
    ``checkout_url`` in their metadata.
    """

    _logger = paddle_logger

    def __init__(
        self,
        vendor_id: str,
        vendor_auth_code: str,
        public_key: str,
        environment: ProviderEnvironment = ProviderEnvironment.SANDBOX,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        for field_name, value in (
            ("paddle_vendor_id", vendor_id),
            ("paddle_auth_code", vendor_auth_code),
            ("paddle_public_key", public_key),
        ):
            if not value:
                raise InvalidConfigurationException(
                    f"Paddle {field_name.removeprefix('paddle_').replace('_', ' ')} is required",
                    field_name=field_name,
                )
        self._vendor_id = vendor_id
        self._vendor_auth_code = vendor_auth_code
        self._public_key = public_key
        self._environment = ProviderEnvironment(environment)

    @property
    def processor_type(self) -> ProcessorType:
        return ProcessorType.PADDLE

    @property
    def name(self) -> str:
        return "Paddle"

    @property
    def _sandbox(self) -> bool:
        return self._environment == ProviderEnvironment.SANDBOX

    @property
    def base_url(self) -> str:
        if self._sandbox:
            return "https://sandbox-vendors.paddle.com/api/2.0"
        return "https://vendors.paddle.com/api/2.0"

    @property
    def billing_url(self) -> str:
        if self._sandbox:
            return "https://sandbox-api.paddle.com"
        return "https://api.paddle.com"

    @property
    def checkout_url(self) -> str:
        if self._sandbox:
            return "https://sandbox-checkout.paddle.com/checkout"
        return "https://checkout.paddle.com/checkout"

    def _extract_error(
        self, body: dict[str, Any], status: int
    ) -> tuple[str, str | None, str | None]:
        error = body.get("error")
        if isinstance(error, dict):
            message = (
                error.get("detail")
                or error.get("message")
                or body.get("message")
                or f"Paddle API error {status}"
            )
            code = error.get("code")
            field = None
            errors = error.get("errors") or []
            if errors and isinstance(errors[0], dict):
                field = errors[0].get("field")
            return message, str(code) if code is not None else None, field
        return body.get("message") or f"Paddle API error {status}", None, None

    async def _classic_request(
        self, endpoint: str, data: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "vendor_id": self._vendor_id,
            "vendor_auth_code": self._vendor_auth_code,
        }
        for key, value in (data or {}).items():
            if value is None:
                continue
            payload[key] = "true" if value is True else "false" if value is False else str(value)

        body = await self._request("POST", endpoint, data=payload)
        if isinstance(body, dict) and body.get("success") is False:
            message, code, _ = self._extract_error(body, 200)
            paddle_logger.error(f"Paddle {endpoint} failed | Code: {code} | {message}")
            if code in _AUTH_ERROR_CODES:
                raise AuthenticationException(
                    message, code=code, authentication_type="vendor_auth", details=body
                )
            raise ProcessorException(
                message, code=code or "unknown", processor_name=self.name, details=body
            )
        return body

    async def _billing_request(
        self,
        method: str,
        endpoint: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body = await self._request(
            method,
            f"{self.billing_url}{endpoint}",
            json_body=json_body,
            params=params,
            headers={"Authorization": f"Bearer {self._vendor_auth_code}"},
        )
        return body

    async def validate_configuration(self) -> bool:
        try:
            await self._classic_request("/product/get_products")
        except AuthenticationException as exc:
            raise InvalidConfigurationException(
                "Invalid Paddle vendor credentials", code="invalid_credentials"
            ) from exc
        return True

    def build_checkout_url(self, product_id: str, customer_id: str) -> str:
        query = urlencode(
            {
                "vendor": self._vendor_id,
                "product": product_id,
                "passthrough": json.dumps({"customer_id": customer_id}),
            }
        )
        return f"{self.checkout_url}?{query}"

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        customer_id = str(data.get("id") or data.get("customer_id") or "")
        return Customer(
            id=customer_id,
            email=self._customer_email(data.get("email"), customer_id),
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType.PADDLE,
            processor_customer_id=customer_id,
            metadata=data.get("custom_data") or {},
            created_at=data.get("created_at") or utcnow(),
            updated_at=data.get("updated_at") or data.get("created_at") or utcnow(),
        )

    def _map_classic_subscription(
        self, data: dict[str, Any], customer_id: str
    ) -> Subscription:
        state = data.get("state")
        last_payment = data.get("last_payment") or {}
        now = utcnow()
        metadata = {
            key: data[key] for key in ("cancel_url", "update_url") if data.get(key)
        }
        metadata.update(_passthrough(data.get("passthrough")))
        return Subscription(
            id=str(data.get("subscription_id") or ""),
            customer_id=customer_id,
            status=map_subscription_status(state),
            price_id=str(data.get("plan_id") or ""),
            product_id=str(data["product_id"]) if data.get("product_id") else None,
            current_period_start=last_payment.get("date") or now,
            current_period_end=data.get("next_bill_date") or now + timedelta(days=30),
            canceled_at=data.get("cancellation_effective_date"),
            cancel_at_period_end=state == "deleted",
            quantity=int(data.get("quantity") or 1),
            processor=ProcessorType.PADDLE,
            processor_subscription_id=str(data.get("subscription_id") or ""),
            metadata=metadata,
        )

    def _map_billing_subscription(self, data: dict[str, Any]) -> Subscription:
        items = data.get("items") or []
        price = (items[0].get("price") if items else None) or {}
        period = data.get("current_billing_period") or {}
        scheduled = data.get("scheduled_change") or {}
        now = utcnow()
        return Subscription(
            id=data["id"],
            customer_id=data.get("customer_id") or "",
            status=map_subscription_status(data.get("status")),
            price_id=price.get("id") or "",
            product_id=price.get("product_id"),
            current_period_start=period.get("starts_at") or data.get("started_at") or now,
            current_period_end=period.get("ends_at") or now + timedelta(days=30),
            canceled_at=data.get("canceled_at"),
            cancel_at_period_end=scheduled.get("action") == "cancel",
            quantity=int((items[0].get("quantity") if items else None) or 1),
            processor=ProcessorType.PADDLE,
            processor_subscription_id=data["id"],
            metadata=data.get("custom_data") or {},
        )

    def _map_order(self, data: dict[str, Any], charge_id: str) -> Charge:
        order = data.get("order") if isinstance(data.get("order"), dict) else data
        amount = to_minor_units(order.get("total") or order.get("amount"))
        refunded = to_minor_units(order.get("refunded_amount"))
        status = CHARGE_STATUS_MAP.get(
            str(order.get("status") or "").lower(), ChargeStatus.FAILED
        )
        if refunded > 0 and refunded >= amount:
            status = ChargeStatus.REFUNDED
        order_id = str(order.get("order_id") or order.get("payment_id") or charge_id)
        return Charge(
            id=order_id,
            customer_id=order.get("customer_email") or data.get("customer_email") or "",
            amount=amount,
            currency=order.get("currency") or "usd",
            status=status,
            description=order.get("product_name"),
            receipt_url=order.get("receipt_url"),
            refunded=status == ChargeStatus.REFUNDED,
            refunded_amount=refunded,
            processor=ProcessorType.PADDLE,
            processor_charge_id=order_id,
            created_at=order.get("created_at") or order.get("event_time") or utcnow(),
            metadata=_passthrough(order.get("passthrough")),
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
        payload: dict[str, Any] = {"email": email}
        if name is not None:
            payload["name"] = name
        if metadata:
            payload["custom_data"] = metadata
        body = await self._billing_request("POST", "/customers", json_body=payload)
        return self._map_customer(body.get("data") or body)

    async def get_customer(self, customer_id: str) -> Customer:
        body = await self._billing_request("GET", f"/customers/{customer_id}")
        return self._map_customer(body.get("data") or body)

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        payload: dict[str, Any] = {}
        if email is not None:
            self._validate_email(email)
            payload["email"] = email
        if name is not None:
            payload["name"] = name
        if metadata:
            payload["custom_data"] = metadata
        body = await self._billing_request(
            "PATCH", f"/customers/{customer_id}", json_body=payload
        )
        return self._map_customer(body.get("data") or body)

    async def delete_customer(self, customer_id: str) -> None:
        # Paddle has no delete; archiving hides the customer
        await self._billing_request(
            "PATCH", f"/customers/{customer_id}", json_body={"status": "archived"}
        )

    # ------------------------------------------------------------------
    # Payment methods (collected by Paddle Checkout)
    # ------------------------------------------------------------------

    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        return PaymentMethod(
            id=payment_method_token,
            customer_id=customer_id,
            type=PaymentMethodType.CARD,
            is_default=set_as_default,
            metadata={"checkout_managed": True},
        )

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        raise self._unsupported(
            "payment method retrieval",
            "Payment method details are included in subscription and transaction data.",
        )

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        # Paddle keeps no vaulted methods outside checkout
        return []

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        return PaymentMethod(
            id=payment_method_id,
            customer_id=customer_id,
            type=PaymentMethodType.CARD,
            is_default=True,
            metadata={"checkout_managed": True},
        )

    async def remove_payment_method(self, payment_method_id: str) -> None:
        raise self._unsupported(
            "payment method removal",
            "Payment methods are managed through the Paddle customer portal.",
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
        now = utcnow()
        checkout_url = self.build_checkout_url(price_id, customer_id)
        paddle_logger.info(f"Paddle checkout created for customer {customer_id}")
        return Subscription(
            id=f"pending_{new_idempotency_key()}",
            customer_id=customer_id,
            status=SubscriptionStatus.INCOMPLETE,
            price_id=price_id,
            product_id=price_id,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            trial_start=now if trial_days else None,
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
            quantity=quantity,
            processor=ProcessorType.PADDLE,
            processor_subscription_id="",
            metadata={
                "checkout_url": checkout_url,
                "note": "Complete the subscription by visiting the checkout URL.",
                **(metadata or {}),
            },
        )

    async def get_subscription(self, subscription_id: str) -> Subscription:
        body = await self._classic_request(
            "/subscription/users", {"subscription_id": subscription_id}
        )
        results = body.get("response") or []
        if not results:
            raise SubscriptionNotFoundException(
                f"Subscription not found: {subscription_id}",
                subscription_id=subscription_id,
            )
        data = results[0]
        customer_id = str(data.get("user_id") or data.get("user_email") or "")
        return self._map_classic_subscription(data, customer_id)

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        body = await self._billing_request(
            "GET", "/subscriptions", params={"customer_id": customer_id}
        )
        return [self._map_billing_subscription(sub) for sub in body.get("data") or []]

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        await self._classic_request(
            "/subscription/users/update",
            {
                "subscription_id": subscription_id,
                "plan_id": price_id,
                "quantity": quantity,
                "passthrough": json.dumps(metadata) if metadata else None,
            },
        )
        return await self.get_subscription(subscription_id)

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        previous = None if immediate else await self.get_subscription(subscription_id)
        await self._classic_request(
            "/subscription/users_cancel", {"subscription_id": subscription_id}
        )
        subscription = await self.get_subscription(subscription_id)
        if immediate:
            return subscription.model_copy(update={"cancel_at_period_end": False})
        # Paddle may already report "deleted"; access runs until the paid period ends
        return subscription.model_copy(
            update={"status": previous.status, "cancel_at_period_end": True}
        )

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        raise self._unsupported(
            "subscription resume",
            "Paddle subscriptions are resumed through the customer update URL.",
        )

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        await self._classic_request(
            "/subscription/users/pause", {"subscription_id": subscription_id}
        )
        return await self.get_subscription(subscription_id)

    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        await self._classic_request(
            "/subscription/users/update",
            {
                "subscription_id": subscription_id,
                "plan_id": new_price_id,
                "prorate": prorate,
            },
        )
        return await self.get_subscription(subscription_id)

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
        return Charge(
            id=f"pending_{new_idempotency_key()}",
            customer_id=customer_id,
            amount=amount,
            currency=currency,
            status=ChargeStatus.PENDING,
            description=description,
            processor=ProcessorType.PADDLE,
            processor_charge_id="",
            created_at=utcnow(),
            metadata={
                "checkout_url": self.build_checkout_url("one_time", customer_id),
                "note": "Complete the payment by visiting the checkout URL.",
                **(metadata or {}),
            },
        )

    async def get_charge(self, charge_id: str) -> Charge:
        body = await self._classic_request("/order", {"order_id": charge_id})
        data = body.get("response") if isinstance(body.get("response"), dict) else body
        return self._map_order(data, charge_id)

    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]:
        # The vendor API has no per-customer order listing
        return []

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        charge = await self.get_charge(charge_id)
        self._ensure_refundable(charge, amount)
        await self._classic_request(
            "/payment/refund",
            {
                "order_id": charge_id,
                "amount": to_major_units(amount) if amount is not None else None,
                "reason": reason,
            },
        )
        return await self.get_charge(charge_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _webhook_secret(self) -> str | None:
        return self._public_key

    def _decode_webhook_body(self, text: str) -> dict[str, Any]:
        return parse_payload_fields(text)

    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool:
        return verify_sorted_fields(payload, signature, secret)

    async def handle_webhook(
        self, payload: WebhookPayload, signature: str | None = None
    ) -> WebhookEvent:
        if signature is None and isinstance(payload, dict):
            signature = payload.get("p_signature")
        elif signature is None:
            _, data = self._parse_webhook_payload(payload)
            signature = data.get("p_signature")
        return await super().handle_webhook(payload, signature)

    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent:
        alert_name = data.get("alert_name")
        if not alert_name:
            raise WebhookException(
                "Webhook alert_name is missing", code="missing_event_type"
            )
        return WebhookEvent(
            id=str(data.get("alert_id") or new_idempotency_key()),
            type=alert_name,
            processor=ProcessorType.PADDLE,
            data=data,
            created_at=data.get("event_time") or utcnow(),
        )
