from typing import Any

from fastapi import status


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
        self.details = details
        super().__init__(message)


class PaymentException(AppException):
    """Base exception for every payment failure.

    ``code`` is the machine readable reason (provider error code or one of
    ours such as ``not_initialized``) that callers branch on.
    """

    def __init__(
        self,
        message: str = "A payment error occurred.",
        code: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, status_code, details)
        self.code = code

    @property
    def is_retryable(self) -> bool:
        return False

    def _context(self) -> str:
        return ""

    def __str__(self) -> str:
        code_str = f" (code: {self.code})" if self.code else ""
        return f"{type(self).__name__}: {self.message}{self._context()}{code_str}"


class NetworkException(PaymentException):
    """Transient transport failure (timeout, DNS, refused connection)."""

    def __init__(
        self,
        message: str = "Unable to reach the payment processor.",
        code: str | None = None,
        status_code: int | None = None,
        url: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            message,
            code,
            status_code or status.HTTP_503_SERVICE_UNAVAILABLE,
            details,
        )
        self.url = url

    @property
    def is_retryable(self) -> bool:
        return True

    def _context(self) -> str:
        return f" at {self.url}" if self.url else ""


class AuthenticationException(PaymentException):
    """Credentials were rejected by the processor."""

    def __init__(
        self,
        message: str = "Authentication with the payment processor failed.",
        code: str | None = None,
        authentication_type: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_401_UNAUTHORIZED, details)
        self.authentication_type = authentication_type

    def _context(self) -> str:
        return f" ({self.authentication_type})" if self.authentication_type else ""


class ValidationException(PaymentException):
    """Caller input was rejected, locally or by the processor."""

    def __init__(
        self,
        message: str = "Invalid request.",
        code: str | None = None,
        field_name: str | None = None,
        invalid_value: Any = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_400_BAD_REQUEST, details)
        self.field_name = field_name
        self.invalid_value = invalid_value

    def _context(self) -> str:
        field_str = f" (field: {self.field_name})" if self.field_name else ""
        value_str = (
            f" (value: {self.invalid_value})" if self.invalid_value is not None else ""
        )
        return field_str + value_str


class CustomerNotFoundException(PaymentException):
    """Exception raised when a customer does not exist at the processor."""

    def __init__(
        self,
        message: str = "Customer not found.",
        code: str | None = None,
        customer_id: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_404_NOT_FOUND, details)
        self.customer_id = customer_id

    def _context(self) -> str:
        return f" (customer: {self.customer_id})" if self.customer_id else ""


class SubscriptionNotFoundException(PaymentException):
    """Exception raised when a subscription does not exist at the processor."""

    def __init__(
        self,
        message: str = "Subscription not found.",
        code: str | None = None,
        subscription_id: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_404_NOT_FOUND, details)
        self.subscription_id = subscription_id

    def _context(self) -> str:
        return f" (subscription: {self.subscription_id})" if self.subscription_id else ""


class ChargeNotFoundException(PaymentException):
    """Exception raised when a charge does not exist at the processor."""

    def __init__(
        self,
        message: str = "Charge not found.",
        code: str | None = None,
        charge_id: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_404_NOT_FOUND, details)
        self.charge_id = charge_id

    def _context(self) -> str:
        return f" (charge: {self.charge_id})" if self.charge_id else ""


class PaymentMethodException(PaymentException):
    """Card declined, invalid token or unknown payment method."""

    def __init__(
        self,
        message: str = "Payment method error.",
        code: str | None = None,
        payment_method_type: str | None = None,
        last4: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_402_PAYMENT_REQUIRED, details)
        self.payment_method_type = payment_method_type
        self.last4 = last4

    def _context(self) -> str:
        if not self.payment_method_type and not self.last4:
            return ""
        parts = [p for p in (self.payment_method_type,) if p]
        if self.last4:
            parts.append(f"ending in {self.last4}")
        return f" ({' '.join(parts)})"


class ProcessorException(PaymentException):
    """Generic processor side failure, carrying the processor name."""

    def __init__(
        self,
        message: str = "The payment processor returned an error.",
        code: str | None = None,
        processor_name: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            message, code, status_code or status.HTTP_502_BAD_GATEWAY, details
        )
        self.processor_name = processor_name

    def __str__(self) -> str:
        prefix = f"{self.processor_name} " if self.processor_name else ""
        code_str = f" (code: {self.code})" if self.code else ""
        return f"{prefix}ProcessorException: {self.message}{code_str}"


class WebhookException(PaymentException):
    """Webhook signature or payload could not be trusted."""

    def __init__(
        self,
        message: str = "Invalid webhook.",
        code: str | None = None,
        event_type: str | None = None,
        webhook_id: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, code, status.HTTP_400_BAD_REQUEST, details)
        self.event_type = event_type
        self.webhook_id = webhook_id

    def _context(self) -> str:
        event_str = f" (event: {self.event_type})" if self.event_type else ""
        id_str = f" (id: {self.webhook_id})" if self.webhook_id else ""
        return event_str + id_str


class InvalidConfigurationException(PaymentException):
    """Configuration failed pre-flight validation."""

    def __init__(
        self,
        message: str = "Invalid payment configuration.",
        code: str | None = None,
        field_name: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            message, code, status.HTTP_500_INTERNAL_SERVER_ERROR, details
        )
        self.field_name = field_name

    def _context(self) -> str:
        return f" (field: {self.field_name})" if self.field_name else ""


__all__ = [
    "AppException",
    "PaymentException",
    "NetworkException",
    "AuthenticationException",
    "ValidationException",
    "CustomerNotFoundException",
    "SubscriptionNotFoundException",
    "ChargeNotFoundException",
    "PaymentMethodException",
    "ProcessorException",
    "WebhookException",
    "InvalidConfigurationException",
]
