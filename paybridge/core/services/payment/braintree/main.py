from datetime import timedelta
from typing import Any

import httpx

from paybridge.core.config import braintree_logger
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
    PaymentException,
    PaymentMethodException,
    WebhookException,
)
from paybridge.core.services.payment.base import (
    HTTPPaymentProcessor,
    new_idempotency_key,
    remaining_period_fraction,
    to_major_units,
    to_minor_units,
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
from paybridge.core.services.payment.webhooks import verify_hmac_sha256

BRAINTREE_VERSION = "2024-11-01"

SUBSCRIPTION_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "past due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}

TRANSACTION_STATUS_MAP: dict[str, ChargeStatus] = {
    "settled": ChargeStatus.SUCCEEDED,
    "settling": ChargeStatus.SUCCEEDED,
    "submitted_for_settlement": ChargeStatus.SUCCEEDED,
    "settlement_pending": ChargeStatus.PENDING,
    "authorized": ChargeStatus.PENDING,
    "authorizing": ChargeStatus.PENDING,
    "voided": ChargeStatus.REFUNDED,
    "authorization_expired": ChargeStatus.FAILED,
    "processor_declined": ChargeStatus.FAILED,
    "settlement_declined": ChargeStatus.FAILED,
    "gateway_rejected": ChargeStatus.FAILED,
    "failed": ChargeStatus.FAILED,
}

# Braintree validation codes for declined or unusable payment methods
DECLINE_CODES = {"2000", "2001", "2004", "2010", "81736", "91564"}


def map_subscription_status(status: str | None) -> SubscriptionStatus:
    return SUBSCRIPTION_STATUS_MAP.get((status or "").lower(), SubscriptionStatus.INCOMPLETE)


def map_transaction_status(status: str | None) -> ChargeStatus:
    return TRANSACTION_STATUS_MAP.get((status or "").lower(), ChargeStatus.PENDING)


def split_name(name: str | None) -> dict[str, str]:
    """Split a display name into Braintree's ``firstName``/``lastName`` pair."""
    if not name:
        return {}
    first, _, last = name.strip().partition(" ")
    parts = {"firstName": first}
    if last.strip():
        parts["lastName"] = last.strip()
    return parts


class BraintreeProcessor(HTTPPaymentProcessor):
    """Braintree gateway adapter.

    Braintree has no native plan swap with proration, so ``swap_plan``
    cancels the current subscription and opens a new one carrying an
    approximate ``proration_amount`` in its metadata.
    """

    _logger = braintree_logger

    def __init__(
        self,
        merchant_id: str,
        public_key: str,
        private_key: str,
        environment: ProviderEnvironment = ProviderEnvironment.SANDBOX,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        for field_name, value in (
            ("braintree_merchant_id", merchant_id),
            ("braintree_public_key", public_key),
            ("braintree_private_key", private_key),
        ):
            if not value:
                raise InvalidConfigurationException(
                    f"{field_name} is required", field_name=field_name
                )
        self._merchant_id = merchant_id
        self._public_key = public_key
        self._private_key = private_key
        self._environment = ProviderEnvironment(environment)

    @property
    def processor_type(self) -> ProcessorType:
        return ProcessorType.BRAINTREE

    @property
    def name(self) -> str:
        return "Braintree"

    @property
    def supports_proration(self) -> bool:
        return False

    @property
    def base_url(self) -> str:
        host = (
            "api.sandbox.braintreegateway.com"
            if self._environment == ProviderEnvironment.SANDBOX
            else "api.braintreegateway.com"
        )
        return f"https://{host}/merchants/{self._merchant_id}"

    def _default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Braintree-Version": BRAINTREE_VERSION,
        }

    def _auth(self) -> httpx.Auth:
        return httpx.BasicAuth(self._public_key, self._private_key)

    def _extract_error(
        self, body: dict[str, Any], status: int
    ) -> tuple[str, str | None, str | None]:
        api_error = body.get("apiErrorResponse") or {}
        message = (
            api_error.get("message")
            or body.get("message")
            or f"Braintree API error {status}"
        )
        errors = (api_error.get("errors") or {}).get("errors") or []
        code = field = None
        if errors and isinstance(errors[0], dict):
            code = errors[0].get("code")
            field = errors[0].get("attribute")
        return message, str(code) if code is not None else None, field

    def _exception_for(
        self,
        status: int,
        message: str,
        code: str | None,
        param: str | None,
        body: dict[str, Any],
    ) -> PaymentException:
        if code in DECLINE_CODES:
            code = "card_declined"
        exc = super()._exception_for(status, message, code, param, body)
        if isinstance(exc, AuthenticationException):
            exc.authentication_type = "basic_auth"
        return exc

    async def validate_configuration(self) -> bool:
        try:
            await self.generate_client_token()
        except AuthenticationException as exc:
            raise InvalidConfigurationException(
                "Invalid Braintree credentials", code="invalid_credentials"
            ) from exc
        return True

    async def generate_client_token(self, customer_id: str | None = None) -> str:
        """Create a client token for the Drop-in UI and client SDKs."""
        token: dict[str, Any] = {"version": 2}
        if customer_id:
            token["customerId"] = customer_id
        body = await self._request(
            "POST", "/client_token", json_body={"client_token": token}
        )
        return (body.get("client_token") or {}).get("value") or ""

    async def create_paypal_checkout_token(
        self,
        amount: int,
        currency: str,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> str:
        """Start a PayPal checkout for ``amount`` minor units and return its token."""
        self._validate_amount(amount)
        nonce: dict[str, Any] = {
            "amount": to_major_units(amount),
            "currencyIsoCode": currency.upper(),
        }
        if return_url:
            nonce["returnUrl"] = return_url
        if cancel_url:
            nonce["cancelUrl"] = cancel_url
        body = await self._request(
            "POST", "/paypal_accounts", json_body={"payment_method_nonce": nonce}
        )
        return (body.get("paypalAccount") or {}).get("token") or ""

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        name = f"{data.get('firstName') or ''} {data.get('lastName') or ''}".strip()
        return Customer(
            id=data["id"],
            email=self._customer_email(data.get("email"), data["id"]),
            name=name or None,
            phone=data.get("phone"),
            processor=ProcessorType.BRAINTREE,
            processor_customer_id=data["id"],
            metadata=data.get("customFields") or {},
            created_at=data.get("createdAt") or utcnow(),
            updated_at=data.get("updatedAt") or data.get("createdAt") or utcnow(),
        )

    def _map_payment_method(
        self, data: dict[str, Any], customer_id: str, is_default: bool | None = None
    ) -> PaymentMethod:
        is_paypal = "payerId" in data or (
            "email" in data and "last4" not in data
        )
        address = data.get("billingAddress")
        billing_details = None
        if address:
            billing_details = BillingDetails(
                name=data.get("cardholderName"),
                address=Address(
                    line1=address.get("streetAddress"),
                    line2=address.get("extendedAddress"),
                    city=address.get("locality"),
                    state=address.get("region"),
                    postal_code=address.get("postalCode"),
                    country=address.get("countryCodeAlpha2"),
                ),
            )
        return PaymentMethod(
            id=data.get("token") or data.get("id") or "",
            customer_id=data.get("customerId") or customer_id,
            type=PaymentMethodType.PAYPAL if is_paypal else PaymentMethodType.CARD,
            last4=data.get("last4"),
            brand=data.get("cardType"),
            expiry_month=int(data["expirationMonth"]) if data.get("expirationMonth") else None,
            expiry_year=int(data["expirationYear"]) if data.get("expirationYear") else None,
            is_default=bool(data.get("default")) if is_default is None else is_default,
            billing_details=billing_details,
            metadata={"email": data["email"]} if is_paypal and data.get("email") else {},
        )

    def _map_subscription(
        self,
        data: dict[str, Any],
        customer_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        now = utcnow()
        start = data.get("billingPeriodStartDate") or data.get("firstBillingDate") or now
        end = (
            data.get("billingPeriodEndDate")
            or data.get("nextBillingDate")
            or now + timedelta(days=30)
        )
        status = map_subscription_status(data.get("status"))
        cycles = data.get("numberOfBillingCycles")
        cancel_at_period_end = (
            status != SubscriptionStatus.CANCELED
            and not data.get("neverExpires", True)
            and cycles is not None
            and cycles == data.get("currentBillingCycle")
        )
        if not customer_id:
            transactions = data.get("transactions") or []
            if transactions:
                customer_id = (transactions[0].get("customer") or {}).get("id") or ""
        trial = bool(data.get("trialPeriod"))
        return Subscription(
            id=data["id"],
            customer_id=customer_id,
            status=status,
            price_id=data.get("planId") or "",
            product_id=data.get("planId"),
            current_period_start=start,
            current_period_end=end,
            trial_start=start if trial else None,
            trial_end=data.get("trialEndDate") if trial else None,
            canceled_at=data.get("updatedAt") if status == SubscriptionStatus.CANCELED else None,
            cancel_at_period_end=cancel_at_period_end,
            quantity=1,
            processor=ProcessorType.BRAINTREE,
            processor_subscription_id=data["id"],
            metadata=metadata or {},
        )

    def _map_charge(self, data: dict[str, Any], customer_id: str = "") -> Charge:
        amount = to_minor_units(data.get("amount"))
        status = map_transaction_status(data.get("status"))
        if data.get("refundedAmount") is not None:
            refunded_amount = to_minor_units(data["refundedAmount"])
        elif status == ChargeStatus.REFUNDED or data.get("refundedTransactionId"):
            refunded_amount = amount
        else:
            refunded_amount = 0
        if refunded_amount and refunded_amount >= amount:
            status = ChargeStatus.REFUNDED
        return Charge(
            id=data["id"],
            customer_id=customer_id or (data.get("customer") or {}).get("id") or "",
            amount=amount,
            currency=data.get("currencyIsoCode") or "usd",
            status=status,
            description=data.get("orderId"),
            refunded=status == ChargeStatus.REFUNDED,
            refunded_amount=refunded_amount,
            processor=ProcessorType.BRAINTREE,
            processor_charge_id=data["id"],
            created_at=data.get("createdAt") or utcnow(),
            metadata=data.get("customFields") or {},
        )

    @staticmethod
    def _payment_method_body(body: dict[str, Any]) -> dict[str, Any]:
        return (
            body.get("paymentMethod")
            or body.get("creditCard")
            or body.get("paypalAccount")
            or {}
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
        customer: dict[str, Any] = {"email": email, **split_name(name)}
        if phone is not None:
            customer["phone"] = phone
        if metadata:
            customer["customFields"] = metadata
        body = await self._request("POST", "/customers", json_body={"customer": customer})
        return self._map_customer(body["customer"])

    async def get_customer(self, customer_id: str) -> Customer:
        body = await self._request("GET", f"/customers/{customer_id}")
        return self._map_customer(body["customer"])

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        customer: dict[str, Any] = split_name(name)
        if email is not None:
            self._validate_email(email)
            customer["email"] = email
        if phone is not None:
            customer["phone"] = phone
        if metadata:
            customer["customFields"] = metadata
        body = await self._request(
            "PUT", f"/customers/{customer_id}", json_body={"customer": customer}
        )
        return self._map_customer(body["customer"])

    async def delete_customer(self, customer_id: str) -> None:
        await self._request("DELETE", f"/customers/{customer_id}")

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        payment_method: dict[str, Any] = {
            "customerId": customer_id,
            "paymentMethodNonce": payment_method_token,
        }
        if set_as_default:
            payment_method["options"] = {"makeDefault": True}
        body = await self._request(
            "POST", "/payment_methods", json_body={"payment_method": payment_method}
        )
        return self._map_payment_method(
            self._payment_method_body(body), customer_id, set_as_default or None
        )

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        body = await self._request("GET", f"/payment_methods/{payment_method_id}")
        return self._map_payment_method(self._payment_method_body(body), "")

    async def _get_customer_record(self, customer_id: str) -> dict[str, Any]:
        body = await self._request("GET", f"/customers/{customer_id}")
        return body["customer"]

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        record = await self._get_customer_record(customer_id)
        return [
            self._map_payment_method(method, customer_id)
            for method in [
                *(record.get("creditCards") or []),
                *(record.get("paypalAccounts") or []),
            ]
        ]

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        body = await self._request(
            "PUT",
            f"/payment_methods/{payment_method_id}",
            json_body={"payment_method": {"options": {"makeDefault": True}}},
        )
        return self._map_payment_method(
            self._payment_method_body(body), customer_id, True
        )

    async def remove_payment_method(self, payment_method_id: str) -> None:
        # Braintree promotes another vaulted method to default on its own
        await self._request("DELETE", f"/payment_methods/{payment_method_id}")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def _default_payment_method_token(self, customer_id: str) -> str | None:
        record = await self._get_customer_record(customer_id)
        default = next(
            (
                method
                for method in [
                    *(record.get("creditCards") or []),
                    *(record.get("paypalAccounts") or []),
                ]
                if method.get("default")
            ),
            None,
        )
        return default.get("token") if default is not None else None

    def _check_quantity(self, quantity: int | None) -> None:
        if quantity is not None and quantity != 1:
            raise self._unsupported(
                "subscription quantities", "Use add-ons to bill for extra seats."
            )

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        self._check_quantity(quantity)
        subscription: dict[str, Any] = {"planId": price_id}
        token = payment_method_id or await self._default_payment_method_token(customer_id)
        if token:
            subscription["paymentMethodToken"] = token
        if trial_days:
            subscription.update(
                trialPeriod=True, trialDuration=trial_days, trialDurationUnit="day"
            )

        body = await self._request(
            "POST", "/subscriptions", json_body={"subscription": subscription}
        )
        created = self._map_subscription(body["subscription"], customer_id, metadata)
        if trial_days and created.trial_end is None:
            trial_start = created.trial_start or utcnow()
            created = created.model_copy(
                update={
                    "trial_start": trial_start,
                    "trial_end": trial_start + timedelta(days=trial_days),
                }
            )
        return created

    async def get_subscription(self, subscription_id: str) -> Subscription:
        body = await self._request("GET", f"/subscriptions/{subscription_id}")
        return self._map_subscription(body["subscription"])

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        # Subscriptions hang off the customer's vaulted payment methods
        record = await self._get_customer_record(customer_id)
        subscriptions: list[Subscription] = []
        for method in [
            *(record.get("creditCards") or []),
            *(record.get("paypalAccounts") or []),
        ]:
            for sub in method.get("subscriptions") or []:
                subscriptions.append(self._map_subscription(sub, customer_id))
        return subscriptions

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        self._check_quantity(quantity)
        subscription: dict[str, Any] = {}
        if price_id is not None:
            subscription["planId"] = price_id
        body = await self._request(
            "PUT",
            f"/subscriptions/{subscription_id}",
            json_body={"subscription": subscription},
        )
        return self._map_subscription(body["subscription"], metadata=metadata)

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        if immediate:
            body = await self._request("PUT", f"/subscriptions/{subscription_id}/cancel")
            return self._map_subscription(body["subscription"])

        # Capping the billing cycles lets the subscription expire at period end
        current = await self._request("GET", f"/subscriptions/{subscription_id}")
        cycle = current["subscription"].get("currentBillingCycle") or 1
        body = await self._request(
            "PUT",
            f"/subscriptions/{subscription_id}",
            json_body={
                "subscription": {"neverExpires": False, "numberOfBillingCycles": cycle}
            },
        )
        subscription = self._map_subscription(body["subscription"])
        if not subscription.cancel_at_period_end:
            subscription = subscription.model_copy(update={"cancel_at_period_end": True})
        return subscription

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        raise self._unsupported(
            "resuming canceled subscriptions", "Create a new subscription instead."
        )

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        raise self._unsupported(
            "pausing subscriptions", "Cancel and recreate the subscription when needed."
        )

    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        body = await self._request("GET", f"/subscriptions/{subscription_id}")
        current = self._map_subscription(body["subscription"])

        # Resolve the replacement's billing before the old subscription is canceled
        customer_id = current.customer_id
        token = body["subscription"].get("paymentMethodToken")
        if token and not customer_id:
            customer_id = (await self.get_payment_method(token)).customer_id
        if not token and customer_id:
            token = await self._default_payment_method_token(customer_id)
        if not token:
            raise PaymentMethodException(
                f"Cannot swap Braintree subscription {subscription_id}: "
                "no payment method to bill the new plan",
                code="payment_method_required",
            )

        proration_amount = 0
        if prorate:
            fraction = remaining_period_fraction(
                current.current_period_start, current.current_period_end
            )
            proration_amount = round(fraction * 1000)

        await self.cancel_subscription(subscription_id, immediate=True)
        braintree_logger.info(
            f"Braintree plan swap: {subscription_id} -> {new_price_id} "
            f"(proration estimate {proration_amount})"
        )
        return await self.create_subscription(
            customer_id,
            new_price_id,
            payment_method_id=token,
            metadata={
                **current.metadata,
                "swapped_from": subscription_id,
                "proration_amount": str(proration_amount),
            },
        )

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
        transaction: dict[str, Any] = {
            "type": "sale",
            "amount": to_major_units(amount),
            "customerId": customer_id,
            "options": {"submitForSettlement": True},
        }
        if payment_method_id:
            transaction["paymentMethodToken"] = payment_method_id
        if description:
            transaction["orderId"] = description
        if metadata:
            transaction["customFields"] = metadata
        body = await self._request(
            "POST", "/transactions", json_body={"transaction": transaction}
        )
        charge = self._map_charge(body["transaction"], customer_id)
        if charge.currency != currency.lower():
            braintree_logger.warning(
                f"Braintree settled {charge.id} in {charge.currency}, requested {currency}"
            )
        return charge

    async def get_charge(self, charge_id: str) -> Charge:
        body = await self._request("GET", f"/transactions/{charge_id}")
        return self._map_charge(body["transaction"])

    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]:
        search: dict[str, Any] = {}
        if customer_id:
            search["customerId"] = {"is": customer_id}
        body = await self._request(
            "POST", "/transactions/advanced_search", json_body={"search": search}
        )
        transactions = body.get("transactions") or []
        return [self._map_charge(txn, customer_id or "") for txn in transactions[:limit]]

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        charge = await self.get_charge(charge_id)
        refund_amount = self._ensure_refundable(charge, amount)
        transaction: dict[str, Any] = {"amount": to_major_units(refund_amount)}
        if reason:
            transaction["orderId"] = reason
        await self._request(
            "POST",
            f"/transactions/{charge_id}/refund",
            json_body={"transaction": transaction},
        )
        return await self.get_charge(charge_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _webhook_secret(self) -> str | None:
        return self._private_key

    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool:
        return verify_hmac_sha256(payload, signature, secret)

    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent:
        kind = data.get("kind")
        if not kind:
            raise WebhookException(
                "Webhook event kind is missing", code="missing_event_type"
            )
        return WebhookEvent(
            id=str(data.get("id") or new_idempotency_key()),
            type=kind,
            processor=ProcessorType.BRAINTREE,
            data=data,
            created_at=data.get("timestamp") or utcnow(),
        )
