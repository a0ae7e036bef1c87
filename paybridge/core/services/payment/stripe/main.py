from typing import Any

import httpx

from paybridge.core.config import stripe_logger
from paybridge.core.enums import (
    ChargeStatus,
    PaymentMethodType,
    ProcessorType,
    SubscriptionStatus,
)
from paybridge.core.exceptions.types import (
    AuthenticationException,
    CustomerNotFoundException,
    InvalidConfigurationException,
    PaymentException,
    PaymentMethodException,
    SubscriptionNotFoundException,
    WebhookException,
)
from paybridge.core.services.payment.base import (
    CARD_DECLINE_CODES,
    HTTPPaymentProcessor,
    new_idempotency_key,
)
from paybridge.core.services.payment.types import (
    Address,
    BillingDetails,
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
    utcnow,
)
from paybridge.core.services.payment.webhooks import verify_timestamped_hmac

STRIPE_API_VERSION = "2024-11-20"

SUBSCRIPTION_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.PAUSED,
}

PAYMENT_INTENT_STATUS_MAP: dict[str, ChargeStatus] = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "processing": ChargeStatus.PENDING,
    "requires_payment_method": ChargeStatus.PENDING,
    "requires_confirmation": ChargeStatus.PENDING,
    "requires_action": ChargeStatus.PENDING,
    "requires_capture": ChargeStatus.PENDING,
    "canceled": ChargeStatus.FAILED,
}

CHARGE_STATUS_MAP: dict[str, ChargeStatus] = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "pending": ChargeStatus.PENDING,
    "failed": ChargeStatus.FAILED,
}

PAYMENT_METHOD_TYPE_MAP: dict[str, PaymentMethodType] = {
    "card": PaymentMethodType.CARD,
    "us_bank_account": PaymentMethodType.BANK_ACCOUNT,
    "sepa_debit": PaymentMethodType.BANK_ACCOUNT,
    "paypal": PaymentMethodType.PAYPAL,
}


def map_subscription_status(status: str | None) -> SubscriptionStatus:
    return SUBSCRIPTION_STATUS_MAP.get(status or "", SubscriptionStatus.INCOMPLETE)


def flatten_to_payload(
    payload: dict[str, Any],
    prefix: str,
    data: dict[str, Any],
    *,
    max_depth: int = 3,
    _current_depth: int = 0,
) -> None:
    """
    Flatten a nested dict into Stripe's bracket form encoding.

    Example:
        flatten_to_payload(payload, "metadata", {"user_id": "123"})
        -> payload["metadata[user_id]"] = "123"

    Parameters
    ----------
    payload : dict[str, Any]
        The payload dict to add flattened keys to.
    prefix : str
        The base key prefix (e.g., "metadata", "items[0]").
    data : dict[str, Any]
        The dict to flatten.
    max_depth : int, optional
        Nesting beyond this depth is stringified. Defaults to 3.
    """
    for key, value in data.items():
        full_key = f"{prefix}[{key}]"
        if isinstance(value, dict) and _current_depth + 1 < max_depth:
            flatten_to_payload(
                payload,
                full_key,
                value,
                max_depth=max_depth,
                _current_depth=_current_depth + 1,
            )
        elif isinstance(value, list):
            for idx, item in enumerate(value):
                if isinstance(item, dict):
                    flatten_to_payload(
                        payload,
                        f"{full_key}[{idx}]",
                        item,
                        max_depth=max_depth,
                        _current_depth=_current_depth + 1,
                    )
                else:
                    payload[f"{full_key}[{idx}]"] = _form_value(item)
        else:
            payload[full_key] = _form_value(value)


def _form_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeProcessor(HTTPPaymentProcessor):
    """Stripe adapter over the form-encoded REST API.

    Charges are PaymentIntents; ``get_charge`` also accepts plain charge ids.
    Webhooks use the timestamped ``Stripe-Signature`` scheme.
    """

    _logger = stripe_logger

    def __init__(
        self,
        publishable_key: str,
        secret_key: str,
        webhook_secret: str | None = None,
        *,
        base_url: str = "https://api.stripe.com",
        api_version: str = STRIPE_API_VERSION,
        webhook_tolerance: int | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self._publishable_key = publishable_key
        self._secret_key = secret_key
        self._webhook_secret_value = webhook_secret
        self._base_url = base_url
        self._api_version = api_version
        self._webhook_tolerance = webhook_tolerance
        self._check_api_key()

    def _check_api_key(self) -> None:
        if not self._secret_key.strip().startswith("sk_"):
            raise InvalidConfigurationException(
                "Invalid Stripe secret key format (must start with sk_)",
                field_name="stripe_secret_key",
            )

    @property
    def processor_type(self) -> ProcessorType:
        return ProcessorType.STRIPE

    @property
    def name(self) -> str:
        return "Stripe"

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def publishable_key(self) -> str:
        return self._publishable_key

    def _default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Stripe-Version": self._api_version,
        }

    def _auth(self) -> httpx.Auth:
        return httpx.BasicAuth(self._secret_key, "")

    def _extract_error(
        self, body: dict[str, Any], status: int
    ) -> tuple[str, str | None, str | None]:
        error = body.get("error") or {}
        message = error.get("message") or f"Stripe API error {status}"
        code = error.get("code")
        decline_code = error.get("decline_code")
        if decline_code in CARD_DECLINE_CODES:
            code = decline_code
        return message, code, error.get("param")

    def _exception_for(
        self,
        status: int,
        message: str,
        code: str | None,
        param: str | None,
        body: dict[str, Any],
    ) -> PaymentException:
        if (body.get("error") or {}).get("type") == "card_error":
            return PaymentMethodException(message, code=code, details=body)
        return super()._exception_for(status, message, code, param, body)

    async def validate_configuration(self) -> bool:
        try:
            await self._request("GET", "/v1/balance")
        except AuthenticationException as exc:
            raise InvalidConfigurationException(
                "Invalid Stripe API credentials", code="invalid_credentials"
            ) from exc
        return True

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        created = data.get("created") or utcnow()
        return Customer(
            id=data["id"],
            email=self._customer_email(data.get("email"), data["id"]),
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType.STRIPE,
            processor_customer_id=data["id"],
            metadata=data.get("metadata") or {},
            created_at=created,
            updated_at=created,
        )

    def _map_payment_method(
        self, data: dict[str, Any], default_id: str | None = None
    ) -> PaymentMethod:
        card = data.get("card") or {}
        billing = data.get("billing_details") or {}
        address = billing.get("address") or {}
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return PaymentMethod(
            id=data["id"],
            customer_id=customer or "",
            type=PAYMENT_METHOD_TYPE_MAP.get(data.get("type", ""), PaymentMethodType.CARD),
            last4=card.get("last4") or (data.get("us_bank_account") or {}).get("last4"),
            brand=card.get("brand"),
            expiry_month=card.get("exp_month"),
            expiry_year=card.get("exp_year"),
            is_default=default_id is not None and data["id"] == default_id,
            billing_details=BillingDetails(
                name=billing.get("name"),
                email=billing.get("email"),
                phone=billing.get("phone"),
                address=Address(**address) if address else None,
            )
            if billing
            else None,
            metadata=data.get("metadata") or {},
        )

    def _map_subscription(self, data: dict[str, Any]) -> Subscription:
        items = (data.get("items") or {}).get("data") or []
        item = items[0] if items else {}
        price = item.get("price") or {}
        status = map_subscription_status(data.get("status"))
        if status == SubscriptionStatus.ACTIVE and data.get("pause_collection"):
            status = SubscriptionStatus.PAUSED
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        period_start = data.get("current_period_start") or item.get("current_period_start")
        period_end = data.get("current_period_end") or item.get("current_period_end")
        return Subscription(
            id=data["id"],
            customer_id=customer or "",
            status=status,
            price_id=price.get("id") or "",
            product_id=price.get("product")
            if isinstance(price.get("product"), str)
            else (price.get("product") or {}).get("id"),
            current_period_start=period_start or data.get("created") or utcnow(),
            current_period_end=period_end or utcnow(),
            trial_start=data.get("trial_start"),
            trial_end=data.get("trial_end"),
            canceled_at=data.get("canceled_at"),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            quantity=item.get("quantity") or data.get("quantity") or 1,
            processor=ProcessorType.STRIPE,
            processor_subscription_id=data["id"],
            metadata=data.get("metadata") or {},
        )

    def _map_payment_intent(self, data: dict[str, Any]) -> Charge:
        latest = data.get("latest_charge")
        latest = latest if isinstance(latest, dict) else {}
        refunded_amount = latest.get("amount_refunded") or 0
        status = PAYMENT_INTENT_STATUS_MAP.get(data.get("status", ""), ChargeStatus.PENDING)
        if latest.get("refunded"):
            status = ChargeStatus.REFUNDED
        return Charge(
            id=data["id"],
            customer_id=data.get("customer") or "",
            amount=data.get("amount") or 0,
            currency=data.get("currency") or "usd",
            status=status,
            description=data.get("description"),
            receipt_url=latest.get("receipt_url"),
            refunded=bool(latest.get("refunded")),
            refunded_amount=refunded_amount,
            processor=ProcessorType.STRIPE,
            processor_charge_id=latest.get("id") or data["id"],
            created_at=data.get("created") or utcnow(),
            metadata=data.get("metadata") or {},
        )

    def _map_charge(self, data: dict[str, Any]) -> Charge:
        status = CHARGE_STATUS_MAP.get(data.get("status", ""), ChargeStatus.PENDING)
        if data.get("refunded"):
            status = ChargeStatus.REFUNDED
        return Charge(
            id=data["id"],
            customer_id=data.get("customer") or "",
            amount=data.get("amount") or 0,
            currency=data.get("currency") or "usd",
            status=status,
            description=data.get("description"),
            receipt_url=data.get("receipt_url"),
            refunded=bool(data.get("refunded")),
            refunded_amount=data.get("amount_refunded") or 0,
            processor=ProcessorType.STRIPE,
            processor_charge_id=data["id"],
            created_at=data.get("created") or utcnow(),
            metadata=data.get("metadata") or {},
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
        if phone is not None:
            payload["phone"] = phone
        if metadata:
            flatten_to_payload(payload, "metadata", metadata)

        data = await self._request(
            "POST",
            "/v1/customers",
            data=payload,
            headers={"Idempotency-Key": new_idempotency_key()},
        )
        return self._map_customer(data)

    async def get_customer(self, customer_id: str) -> Customer:
        data = await self._request("GET", f"/v1/customers/{customer_id}")
        if data.get("deleted"):
            raise CustomerNotFoundException(
                "Customer has been deleted", customer_id=customer_id
            )
        return self._map_customer(data)

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
        if phone is not None:
            payload["phone"] = phone
        if metadata:
            flatten_to_payload(payload, "metadata", metadata)

        data = await self._request("POST", f"/v1/customers/{customer_id}", data=payload)
        return self._map_customer(data)

    async def delete_customer(self, customer_id: str) -> None:
        await self._request("DELETE", f"/v1/customers/{customer_id}")

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def _default_payment_method_id(self, customer_id: str) -> str | None:
        data = await self._request("GET", f"/v1/customers/{customer_id}")
        default = (data.get("invoice_settings") or {}).get("default_payment_method")
        if isinstance(default, dict):
            return default.get("id")
        return default

    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        if not payment_method_token:
            raise PaymentMethodException(
                "Payment method token cannot be empty", code="invalid_token"
            )
        data = await self._request(
            "POST",
            f"/v1/payment_methods/{payment_method_token}/attach",
            data={"customer": customer_id},
        )
        if set_as_default:
            await self._request(
                "POST",
                f"/v1/customers/{customer_id}",
                data={"invoice_settings[default_payment_method]": data["id"]},
            )
        return self._map_payment_method(
            data, default_id=data["id"] if set_as_default else None
        )

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        data = await self._request("GET", f"/v1/payment_methods/{payment_method_id}")
        default_id = None
        if data.get("customer"):
            default_id = await self._default_payment_method_id(data["customer"])
        return self._map_payment_method(data, default_id=default_id)

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        default_id = await self._default_payment_method_id(customer_id)
        data = await self._request(
            "GET",
            "/v1/payment_methods",
            params={"customer": customer_id, "type": "card"},
        )
        return [
            self._map_payment_method(pm, default_id=default_id)
            for pm in data.get("data", [])
        ]

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        await self._request(
            "POST",
            f"/v1/customers/{customer_id}",
            data={"invoice_settings[default_payment_method]": payment_method_id},
        )
        data = await self._request("GET", f"/v1/payment_methods/{payment_method_id}")
        return self._map_payment_method(data, default_id=payment_method_id)

    async def remove_payment_method(self, payment_method_id: str) -> None:
        """Detach a payment method, promoting another one if it was the default
        of a customer with live subscriptions."""
        pm = await self._request("GET", f"/v1/payment_methods/{payment_method_id}")
        customer_id = pm.get("customer")
        was_default = bool(
            customer_id
            and await self._default_payment_method_id(customer_id) == payment_method_id
        )

        await self._request("POST", f"/v1/payment_methods/{payment_method_id}/detach")

        if not (customer_id and was_default):
            return
        subscriptions = await self.list_subscriptions(customer_id)
        if not any(
            s.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
            for s in subscriptions
        ):
            return
        remaining = await self.list_payment_methods(customer_id)
        if remaining:
            await self.set_default_payment_method(customer_id, remaining[0].id)
            stripe_logger.info(
                f"Promoted {remaining[0].id} to default for customer {customer_id}"
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
        payload: dict[str, Any] = {
            "customer": customer_id,
            "items[0][price]": price_id,
            "items[0][quantity]": str(quantity),
            "expand[]": "latest_invoice.payment_intent",
        }
        if payment_method_id is not None:
            payload["default_payment_method"] = payment_method_id
        if trial_days is not None and trial_days > 0:
            payload["trial_period_days"] = str(trial_days)
        if metadata:
            flatten_to_payload(payload, "metadata", metadata)

        data = await self._request(
            "POST",
            "/v1/subscriptions",
            data=payload,
            headers={"Idempotency-Key": new_idempotency_key()},
        )
        return self._map_subscription(data)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        data = await self._request("GET", f"/v1/subscriptions/{subscription_id}")
        return self._map_subscription(data)

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        data = await self._request(
            "GET",
            "/v1/subscriptions",
            params={"customer": customer_id, "status": "all"},
        )
        return [self._map_subscription(sub) for sub in data.get("data", [])]

    async def _subscription_item_id(self, subscription_id: str) -> str:
        data = await self._request("GET", f"/v1/subscriptions/{subscription_id}")
        items = (data.get("items") or {}).get("data") or []
        if not items:
            raise SubscriptionNotFoundException(
                "Subscription has no items", subscription_id=subscription_id
            )
        return items[0]["id"]

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        payload: dict[str, Any] = {}
        if price_id is not None or quantity is not None:
            payload["items[0][id]"] = await self._subscription_item_id(subscription_id)
            if price_id is not None:
                payload["items[0][price]"] = price_id
            if quantity is not None:
                payload["items[0][quantity]"] = str(quantity)
        if metadata:
            flatten_to_payload(payload, "metadata", metadata)

        data = await self._request(
            "POST", f"/v1/subscriptions/{subscription_id}", data=payload
        )
        return self._map_subscription(data)

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        if immediate:
            data = await self._request("DELETE", f"/v1/subscriptions/{subscription_id}")
        else:
            data = await self._request(
                "POST",
                f"/v1/subscriptions/{subscription_id}",
                data={"cancel_at_period_end": "true"},
            )
        return self._map_subscription(data)

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        data = await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={"cancel_at_period_end": "false", "pause_collection": ""},
        )
        return self._map_subscription(data)

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        data = await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={"pause_collection[behavior]": "mark_uncollectible"},
        )
        return self._map_subscription(data)

    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        item_id = await self._subscription_item_id(subscription_id)
        data = await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={
                "items[0][id]": item_id,
                "items[0][price]": new_price_id,
                "proration_behavior": "create_prorations" if prorate else "none",
            },
        )
        return self._map_subscription(data)

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
        payload: dict[str, Any] = {
            "amount": str(amount),
            "currency": currency.lower(),
            "customer": customer_id,
            "confirm": "true",
            "expand[]": "latest_charge",
        }
        if description is not None:
            payload["description"] = description
        if payment_method_id is not None:
            payload["payment_method"] = payment_method_id
            payload["off_session"] = "true"
        else:
            payload["automatic_payment_methods[enabled]"] = "true"
            payload["automatic_payment_methods[allow_redirects]"] = "never"
        if metadata:
            flatten_to_payload(payload, "metadata", metadata)

        data = await self._request(
            "POST",
            "/v1/payment_intents",
            data=payload,
            headers={"Idempotency-Key": new_idempotency_key()},
        )
        return self._map_payment_intent(data)

    async def get_charge(self, charge_id: str) -> Charge:
        if charge_id.startswith("pi_"):
            data = await self._request(
                "GET",
                f"/v1/payment_intents/{charge_id}",
                params={"expand[]": "latest_charge"},
            )
            return self._map_payment_intent(data)
        data = await self._request("GET", f"/v1/charges/{charge_id}")
        return self._map_charge(data)

    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]:
        params: dict[str, Any] = {"limit": limit}
        if customer_id is not None:
            params["customer"] = customer_id
        data = await self._request("GET", "/v1/charges", params=params)
        return [self._map_charge(charge) for charge in data.get("data", [])]

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        charge = await self.get_charge(charge_id)
        refund_amount = self._ensure_refundable(charge, amount)

        payload: dict[str, Any] = {"amount": str(refund_amount)}
        if charge_id.startswith("pi_"):
            payload["payment_intent"] = charge_id
        else:
            payload["charge"] = charge_id
        if reason is not None:
            payload["reason"] = reason

        await self._request(
            "POST",
            "/v1/refunds",
            data=payload,
            headers={"Idempotency-Key": new_idempotency_key()},
        )
        return await self.get_charge(charge_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _webhook_secret(self) -> str | None:
        return self._webhook_secret_value

    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool:
        return verify_timestamped_hmac(
            payload, signature, secret, tolerance=self._webhook_tolerance
        )

    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent:
        event_type = data.get("type")
        if not event_type:
            raise WebhookException(
                "Webhook event type is missing",
                code="missing_event_type",
                webhook_id=data.get("id"),
            )
        return WebhookEvent(
            id=data.get("id") or new_idempotency_key(),
            type=event_type,
            processor=ProcessorType.STRIPE,
            data=data.get("data") or {},
            created_at=data.get("created") or utcnow(),
        )
