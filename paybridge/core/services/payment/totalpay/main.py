import json
from typing import Any

from paybridge.core.config import totalpay_logger
from paybridge.core.enums import ProcessorType, ProviderEnvironment
from paybridge.core.exceptions.types import InvalidConfigurationException
from paybridge.core.services.payment.base import PaymentProcessor, new_idempotency_key
from paybridge.core.services.payment.types import (
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
    utcnow,
)
from paybridge.core.services.payment.webhooks import (
    compute_hmac_sha256,
    verify_hmac_sha256,
)


class TotalpayProcessor(PaymentProcessor):
    """Totalpay Global adapter.

    Totalpay publishes no customer, subscription or charge endpoints, so every
    contract operation validates its input and then raises ``not_implemented``.
    Webhooks and request signing are fully supported.
    """

    _logger = totalpay_logger

    SANDBOX_URL = "https://sandbox.totalpay.global/api"
    PRODUCTION_URL = "https://api.totalpay.global"

    def __init__(
        self,
        merchant_id: str,
        api_key: str,
        secret_key: str,
        environment: ProviderEnvironment = ProviderEnvironment.SANDBOX,
    ) -> None:
        for field_name, value in (
            ("totalpay_merchant_id", merchant_id),
            ("totalpay_api_key", api_key),
            ("totalpay_secret_key", secret_key),
        ):
            if not value:
                raise InvalidConfigurationException(
                    f"{field_name} is required", field_name=field_name
                )
        self._merchant_id = merchant_id
        self._api_key = api_key
        self._secret_key = secret_key
        self._environment = ProviderEnvironment(environment)

    @property
    def processor_type(self) -> ProcessorType:
        return ProcessorType.TOTALPAY_GLOBAL

    @property
    def name(self) -> str:
        return "Totalpay Global"

    @property
    def supports_trial_periods(self) -> bool:
        return False

    @property
    def supports_plan_swapping(self) -> bool:
        return False

    @property
    def supports_proration(self) -> bool:
        return False

    @property
    def base_url(self) -> str:
        if self._environment == ProviderEnvironment.SANDBOX:
            return self.SANDBOX_URL
        return self.PRODUCTION_URL

    def request_headers(self, body: dict[str, Any] | str | None = None) -> dict[str, str]:
        """Authentication headers for a Totalpay request, signing ``body`` when given."""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Merchant-Id": self._merchant_id,
            "X-Api-Key": self._api_key,
        }
        if body is not None:
            raw = body if isinstance(body, str) else json.dumps(body, separators=(",", ":"))
            headers["X-Signature"] = compute_hmac_sha256(self._secret_key, raw)
        return headers

    async def validate_configuration(self) -> bool:
        # No authenticated endpoint is documented; presence was checked on init
        totalpay_logger.info("Totalpay credentials present; remote validation unavailable")
        return True

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
        raise self._not_implemented("create_customer")

    async def get_customer(self, customer_id: str) -> Customer:
        raise self._not_implemented("get_customer")

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
        raise self._not_implemented("update_customer")

    async def delete_customer(self, customer_id: str) -> None:
        raise self._not_implemented("delete_customer")

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        raise self._not_implemented("add_payment_method")

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        raise self._not_implemented("get_payment_method")

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        raise self._not_implemented("list_payment_methods")

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        raise self._not_implemented("set_default_payment_method")

    async def remove_payment_method(self, payment_method_id: str) -> None:
        raise self._not_implemented("remove_payment_method")

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
        raise self._not_implemented("create_subscription")

    async def get_subscription(self, subscription_id: str) -> Subscription:
        raise self._not_implemented("get_subscription")

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        raise self._not_implemented("list_subscriptions")

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        raise self._not_implemented("update_subscription")

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        raise self._not_implemented("cancel_subscription")

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        raise self._unsupported("resuming subscriptions")

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        raise self._unsupported("pausing subscriptions")

    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        raise self._unsupported("plan swapping")

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
        raise self._not_implemented("create_charge")

    async def get_charge(self, charge_id: str) -> Charge:
        raise self._not_implemented("get_charge")

    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]:
        raise self._not_implemented("list_charges")

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        if amount is not None:
            self._validate_amount(amount)
        raise self._not_implemented("refund_charge")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _webhook_secret(self) -> str | None:
        return self._secret_key

    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool:
        return verify_hmac_sha256(payload, signature, secret)

    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent:
        event_id = data.get("id") or data.get("transaction_id") or new_idempotency_key()
        return WebhookEvent(
            id=str(event_id),
            type=data.get("event_type") or data.get("type") or "unknown",
            processor=ProcessorType.TOTALPAY_GLOBAL,
            data=data,
            created_at=data.get("timestamp") or data.get("created") or utcnow(),
        )
