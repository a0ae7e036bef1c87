"""
Tests for the Totalpay Global adapter.
"""

import json

import pytest

from paybridge.core.enums import ProcessorType, ProviderEnvironment
from paybridge.core.exceptions.types import (
    InvalidConfigurationException,
    ProcessorException,
    ValidationException,
    WebhookException,
)
from paybridge.core.services.payment.totalpay.main import TotalpayProcessor
from paybridge.core.services.payment.webhooks import compute_hmac_sha256


@pytest.fixture
def processor() -> TotalpayProcessor:
    return TotalpayProcessor("merchant_1", "api_1", "secret_1")


class TestTotalpayConfiguration:

    @pytest.mark.parametrize(
        "args, field_name",
        [
            (("", "api_1", "secret_1"), "totalpay_merchant_id"),
            (("merchant_1", "", "secret_1"), "totalpay_api_key"),
            (("merchant_1", "api_1", ""), "totalpay_secret_key"),
        ],
    )
    def test_required_fields(self, args, field_name):
        with pytest.raises(InvalidConfigurationException) as exc_info:
            TotalpayProcessor(*args)

        assert exc_info.value.field_name == field_name

    def test_identity_and_capabilities(self, processor):
        assert processor.processor_type == ProcessorType.TOTALPAY_GLOBAL
        assert processor.name == "Totalpay Global"
        assert processor.supports_trial_periods is False
        assert processor.supports_plan_swapping is False
        assert processor.supports_proration is False

    def test_base_url_per_environment(self, processor):
        production = TotalpayProcessor(
            "merchant_1", "api_1", "secret_1", ProviderEnvironment.PRODUCTION
        )

        assert processor.base_url == "https://sandbox.totalpay.global/api"
        assert production.base_url == "https://api.totalpay.global"

    async def test_validate_configuration_is_local(self, processor):
        assert await processor.validate_configuration() is True


class TestTotalpayRequestHeaders:

    def test_unsigned_headers(self, processor):
        headers = processor.request_headers()

        assert headers["X-Merchant-Id"] == "merchant_1"
        assert headers["X-Api-Key"] == "api_1"
        assert "X-Signature" not in headers

    def test_dict_body_signed_compactly(self, processor):
        headers = processor.request_headers({"amount": "10.00", "currency": "USD"})

        expected = compute_hmac_sha256(
            "secret_1", json.dumps({"amount": "10.00", "currency": "USD"}, separators=(",", ":"))
        )
        assert headers["X-Signature"] == expected

    def test_string_body_signed_verbatim(self, processor):
        headers = processor.request_headers('{"a": 1}')

        assert headers["X-Signature"] == compute_hmac_sha256("secret_1", '{"a": 1}')


class TestTotalpayOperations:
    """Operations without a documented endpoint raise instead of returning placeholders."""

    @pytest.mark.parametrize(
        "operation, args",
        [
            ("get_customer", ("c",)),
            ("delete_customer", ("c",)),
            ("add_payment_method", ("c", "tok")),
            ("list_payment_methods", ("c",)),
            ("create_subscription", ("c", "price")),
            ("list_subscriptions", ("c",)),
            ("cancel_subscription", ("s",)),
            ("get_charge", ("ch",)),
            ("list_charges", ()),
        ],
    )
    async def test_not_implemented(self, processor, operation, args):
        with pytest.raises(ProcessorException) as exc_info:
            await getattr(processor, operation)(*args)

        assert exc_info.value.code == "not_implemented"
        assert exc_info.value.processor_name == "Totalpay Global"

    @pytest.mark.parametrize(
        "operation, args",
        [
            ("resume_subscription", ("s",)),
            ("pause_subscription", ("s",)),
            ("swap_plan", ("s", "price")),
        ],
    )
    async def test_unsupported(self, processor, operation, args):
        with pytest.raises(ProcessorException) as exc_info:
            await getattr(processor, operation)(*args)

        assert exc_info.value.code == "unsupported_operation"

    async def test_inputs_validated_before_not_implemented(self, processor):
        with pytest.raises(ValidationException):
            await processor.create_customer("not-an-email")
        with pytest.raises(ValidationException):
            await processor.create_charge("c", 0, "usd")
        with pytest.raises(ValidationException):
            await processor.refund_charge("ch", amount=-5)

    async def test_valid_create_customer_still_not_implemented(self, processor):
        with pytest.raises(ProcessorException) as exc_info:
            await processor.create_customer("a@b.com")

        assert exc_info.value.code == "not_implemented"


class TestTotalpayWebhooks:

    async def test_signed_webhook(self, processor):
        payload = '{"id":"evt_1","event_type":"payment.completed","timestamp":"2024-01-01T00:00:00Z"}'

        event = await processor.handle_webhook(payload, compute_hmac_sha256("secret_1", payload))

        assert event.id == "evt_1"
        assert event.type == "payment.completed"
        assert event.processor == ProcessorType.TOTALPAY_GLOBAL

    async def test_id_and_type_fallbacks(self, processor):
        event = await processor.handle_webhook('{"transaction_id":"txn_9","type":"refund"}')

        assert event.id == "txn_9"
        assert event.type == "refund"

    async def test_unknown_type(self, processor):
        event = await processor.handle_webhook("{}")

        assert event.type == "unknown"
        assert event.id

    async def test_invalid_signature(self, processor):
        payload = '{"event_type":"payment.completed"}'

        with pytest.raises(WebhookException) as exc_info:
            await processor.handle_webhook(payload, compute_hmac_sha256("wrong", payload))

        assert exc_info.value.code == "invalid_signature"
