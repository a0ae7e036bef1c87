"""
Processor contract and the HTTP plumbing shared by the provider adapters.

Adapters are built only through ``paybridge.core.services.configuration``;
callers depend on ``PaymentProcessor`` and branch on its capability flags,
never on the concrete class.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
import json
import logging
from typing import Any
import uuid

import httpx

from paybridge.core.config import webhook_logger
from paybridge.core.enums import ProcessorType
from paybridge.core.exceptions.types import (
    AuthenticationException,
    ChargeNotFoundException,
    CustomerNotFoundException,
    NetworkException,
    PaymentException,
    PaymentMethodException,
    ProcessorException,
    SubscriptionNotFoundException,
    ValidationException,
    WebhookException,
)
from paybridge.core.services.payment.types import (
    Charge,
    Customer,
    PaymentMethod,
    Subscription,
    WebhookEvent,
    utcnow,
)
from paybridge.core.services.payment.webhooks import canonical_json

CARD_DECLINE_CODES: frozenset[str] = frozenset(
    {
        "card_declined",
        "insufficient_funds",
        "lost_card",
        "stolen_card",
        "expired_card",
        "incorrect_cvc",
        "processing_error",
        "incorrect_number",
    }
)

_CHARGE_NOT_FOUND_HINTS = ("charge", "payment_intent", "payment intent", "order", "transaction")
_PAYMENT_METHOD_NOT_FOUND_HINTS = ("payment method", "payment_method", "paymentmethod")

WebhookPayload = str | bytes | dict[str, Any]


def to_major_units(amount: int) -> str:
    """Render an amount in minor units as a major-unit decimal string ("12.34")."""
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


def to_minor_units(value: Any) -> int:
    """Parse a major-unit amount (string or number) into integer minor units."""
    if value is None or value == "":
        return 0
    return int(
        (Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def remaining_period_fraction(
    period_start: datetime, period_end: datetime, now: datetime | None = None
) -> float:
    """Unused share of the current billing period, in ``[0, 1]``."""
    now = now or utcnow()
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        return 0.0
    remaining = max(0.0, (period_end - now).total_seconds())
    return min(1.0, remaining / total)


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


class PaymentProcessor(ABC):
    """Provider neutral payment contract.

    Optional operations are guarded by ``supports_trial_periods``,
    ``supports_plan_swapping`` and ``supports_proration``. A processor that
    cannot perform an operation raises ``ProcessorException`` with code
    ``unsupported_operation`` (or ``not_implemented`` when the provider has no
    documented endpoint); it never returns placeholder data silently.
    """

    _logger: logging.Logger = webhook_logger

    # ------------------------------------------------------------------
    # Identity and capabilities
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def processor_type(self) -> ProcessorType: ...

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    def supports_trial_periods(self) -> bool:
        return True

    @property
    def supports_plan_swapping(self) -> bool:
        return True

    @property
    def supports_proration(self) -> bool:
        return True

    async def validate_configuration(self) -> bool:
        """Perform a cheap authenticated call to confirm the credentials work."""
        return True

    async def aclose(self) -> None:
        """Release network resources held by the processor."""
        return None

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_customer(
        self,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer: ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer: ...

    @abstractmethod
    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer: ...

    @abstractmethod
    async def delete_customer(self, customer_id: str) -> None: ...

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_payment_method(
        self,
        customer_id: str,
        payment_method_token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod: ...

    @abstractmethod
    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod: ...

    @abstractmethod
    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]: ...

    @abstractmethod
    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod: ...

    @abstractmethod
    async def remove_payment_method(self, payment_method_id: str) -> None: ...

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription: ...

    @abstractmethod
    async def list_subscriptions(self, customer_id: str) -> list[Subscription]: ...

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        quantity: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription: ...

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription: ...

    @abstractmethod
    async def resume_subscription(self, subscription_id: str) -> Subscription: ...

    @abstractmethod
    async def pause_subscription(self, subscription_id: str) -> Subscription: ...

    @abstractmethod
    async def swap_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription: ...

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_charge(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str | None = None,
        payment_method_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Charge: ...

    @abstractmethod
    async def get_charge(self, charge_id: str) -> Charge: ...

    @abstractmethod
    async def list_charges(
        self, customer_id: str | None = None, limit: int = 10
    ) -> list[Charge]: ...

    @abstractmethod
    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge: ...

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @abstractmethod
    def verify_webhook_signature(
        self, payload: str | bytes, signature: str, secret: str
    ) -> bool: ...

    @abstractmethod
    def _webhook_secret(self) -> str | None: ...

    @abstractmethod
    def _build_webhook_event(self, data: dict[str, Any]) -> WebhookEvent: ...

    def _decode_webhook_body(self, text: str) -> dict[str, Any]:
        parsed = json.loads(text)
        if not isinstance(parsed, dict):
            raise ValueError("Webhook payload must be a JSON object")
        return parsed

    def _parse_webhook_payload(
        self, payload: WebhookPayload
    ) -> tuple[str, dict[str, Any]]:
        if isinstance(payload, dict):
            return canonical_json(payload), payload
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            return text, self._decode_webhook_body(text)
        except (ValueError, UnicodeDecodeError) as exc:
            raise WebhookException(
                "Webhook payload is not valid JSON", code="invalid_payload"
            ) from exc

    async def handle_webhook(
        self, payload: WebhookPayload, signature: str | None = None
    ) -> WebhookEvent:
        """Parse an inbound webhook, verifying its signature first when one is given.

        Parameters
        ----------
        payload : str | bytes | dict[str, Any]
            The raw request body. A parsed dict is accepted and re-rendered as
            compact JSON for verification, which only matches providers that
            sign that exact rendering; pass the raw body whenever possible.
        signature : str | None, optional
            The provider signature header.

        Returns
        -------
        WebhookEvent
            The parsed event with its provider-native type.

        Raises
        ------
        WebhookException
            ``invalid_payload``, ``missing_webhook_secret``,
            ``invalid_signature`` or ``missing_event_type``.
        """
        raw, data = self._parse_webhook_payload(payload)

        if signature is not None:
            secret = self._webhook_secret()
            if not secret:
                raise WebhookException(
                    f"{self.name} webhook secret is not configured",
                    code="missing_webhook_secret",
                )
            if not self.verify_webhook_signature(raw, signature, secret):
                webhook_logger.warning(f"{self.name} webhook signature mismatch")
                raise WebhookException(
                    "Invalid webhook signature", code="invalid_signature"
                )

        event = self._build_webhook_event(data)
        webhook_logger.info(
            f"{self.name} webhook received: {event.type} (id: {event.id})"
        )
        return event

    # ------------------------------------------------------------------
    # Shared guards
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_email(email: str) -> None:
        if not email or "@" not in email:
            raise ValidationException(
                "Invalid email address",
                code="invalid_email",
                field_name="email",
                invalid_value=email,
            )

    @staticmethod
    def _validate_amount(amount: int, field_name: str = "amount") -> None:
        if amount <= 0:
            raise ValidationException(
                "Amount must be a positive integer in minor currency units",
                code="invalid_amount",
                field_name=field_name,
                invalid_value=amount,
            )

    @classmethod
    def _ensure_refundable(cls, charge: Charge, amount: int | None) -> int:
        """Return the amount to refund, rejecting over-refunds up front."""
        remaining = charge.amount - charge.refunded_amount
        refund_amount = remaining if amount is None else amount
        cls._validate_amount(refund_amount)
        if refund_amount > remaining:
            raise ValidationException(
                f"Refund of {refund_amount} exceeds the refundable amount {remaining}",
                code="refund_exceeds_charge",
                field_name="amount",
                invalid_value=amount,
            )
        return refund_amount

    def _unsupported(self, operation: str, hint: str | None = None) -> ProcessorException:
        message = f"{self.name} does not support {operation}"
        if hint:
            message = f"{message}. {hint}"
        return ProcessorException(
            message, code="unsupported_operation", processor_name=self.name
        )

    def _customer_email(self, email: str | None, customer_id: str) -> str:
        if not email:
            raise ProcessorException(
                f"{self.name} customer {customer_id} has no email address",
                code="missing_customer_email",
                processor_name=self.name,
            )
        return email

    def _not_implemented(self, operation: str) -> ProcessorException:
        return ProcessorException(
            f"{operation} is not implemented for {self.name}: the provider does "
            f"not document an endpoint for it",
            code="not_implemented",
            processor_name=self.name,
        )


class HTTPPaymentProcessor(PaymentProcessor):
    """Adapter base owning a lazily created ``httpx.AsyncClient``.

    Subclasses supply ``base_url``, headers/auth and ``_extract_error`` for
    their error body shape; ``_request`` maps every failure onto the shared
    exception taxonomy.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    @abstractmethod
    def base_url(self) -> str: ...

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _auth(self) -> httpx.Auth | None:
        return None

    def _init_client(self) -> httpx.AsyncClient:
        """Create the HTTP client on first use; later calls reuse it."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
                headers=self._default_headers(),
                auth=self._auth(),
                transport=self._transport,
            )
            self._logger.info(f"{self.name} HTTP client initialized")
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._logger.info(f"{self.name} HTTP client closed")

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        data: dict[str, Any] | None = None,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        content: str | bytes | None = None,
    ) -> Any:
        """
        Send one request and return the decoded body.

        Parameters
        ----------
            method : str
                HTTP method.
            endpoint : str
                Path relative to ``base_url``.
            data : dict[str, Any] | None
                Form-encoded body.
            json_body : Any
                JSON body.
            params : dict[str, Any] | None
                Query parameters.
            headers : dict[str, str] | None
                Extra request headers.
            content : str | bytes | None
                Pre-serialized body (used when the body must be signed).

        Returns
        -------
            Any
                Decoded JSON, the text body, or ``{}`` for an empty body.

        Raises
        ------
            NetworkException
                Timeouts (``timeout``) and transport failures (``connection_error``).
            PaymentException
                A subclass chosen by ``_exception_for`` for HTTP error statuses.
        """
        client = self._init_client()

        try:
            resp: httpx.Response = await client.request(
                method,
                endpoint,
                data=data,
                json=json_body,
                params=params,
                headers=headers,
                content=content,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._map_status_error(exc) from exc
        except httpx.TimeoutException as exc:
            self._logger.warning(f"{self.name} {method} {endpoint} timed out: {exc}")
            raise NetworkException(
                f"Request to {self.name} timed out",
                code="timeout",
                url=endpoint,
            ) from exc
        except httpx.TransportError as exc:
            self._logger.warning(
                f"{self.name} {method} {endpoint} failed: "
                f"{exc.__class__.__name__}: {exc}"
            )
            raise NetworkException(
                f"Unable to connect to {self.name}",
                code="connection_error",
                url=endpoint,
            ) from exc

        self._logger.info(f"{self.name} {method} {endpoint} succeeded ({resp.status_code})")

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def _map_status_error(self, exc: httpx.HTTPStatusError) -> PaymentException:
        response = exc.response
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        if not isinstance(body, dict):
            body = {"message": str(body)}

        message, code, param = self._extract_error(body, status)
        self._logger.error(
            f"{self.name} error: {status} | Code: {code or 'N/A'} | Message: {message}"
        )
        return self._exception_for(status, message, code, param, body)

    def _extract_error(
        self, body: dict[str, Any], status: int
    ) -> tuple[str, str | None, str | None]:
        """Pull ``(message, code, param)`` out of the provider error body."""
        error = body.get("error")
        if isinstance(error, dict):
            return (
                error.get("message") or f"{self.name} API error {status}",
                error.get("code"),
                error.get("param"),
            )
        return (body.get("message") or f"{self.name} API error {status}", None, None)

    def _exception_for(
        self,
        status: int,
        message: str,
        code: str | None,
        param: str | None,
        body: dict[str, Any],
    ) -> PaymentException:
        lowered = message.lower()

        if code in CARD_DECLINE_CODES:
            return PaymentMethodException(message, code=code, details=body)
        if status == 429:
            return ProcessorException(
                message,
                code="rate_limit_exceeded",
                processor_name=self.name,
                status_code=429,
                details=body,
            )
        if status in (401, 403):
            return AuthenticationException(
                message,
                code=code or ("unauthorized" if status == 401 else "forbidden"),
                details=body,
            )
        if status == 404:
            if "customer" in lowered:
                return CustomerNotFoundException(message, code=code, details=body)
            if "subscription" in lowered:
                return SubscriptionNotFoundException(message, code=code, details=body)
            if any(hint in lowered for hint in _PAYMENT_METHOD_NOT_FOUND_HINTS):
                return PaymentMethodException(
                    message, code=code or "not_found", details=body
                )
            if any(hint in lowered for hint in _CHARGE_NOT_FOUND_HINTS):
                return ChargeNotFoundException(message, code=code, details=body)
            return ProcessorException(
                message,
                code=code or "not_found",
                processor_name=self.name,
                status_code=404,
                details=body,
            )
        if status in (400, 422):
            return ValidationException(
                message, code=code, field_name=param, details=body
            )
        return ProcessorException(
            message,
            code=code or ("server_error" if status >= 500 else None),
            processor_name=self.name,
            status_code=status,
            details=body,
        )


__all__ = [
    "CARD_DECLINE_CODES",
    "HTTPPaymentProcessor",
    "PaymentProcessor",
    "WebhookPayload",
    "new_idempotency_key",
    "remaining_period_fraction",
    "to_major_units",
    "to_minor_units",
]
