"""
Tests for the Paddle adapter.

Classic vendor endpoints are form POSTs carrying the vendor credentials;
customers and subscription listing go through the Billing API.
"""

import hashlib
from datetime import timedelta
import json
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import RecordingTransport, json_response
from paybridge.core.enums import ChargeStatus, ProviderEnvironment, SubscriptionStatus
from paybridge.core.exceptions.types import (
    AuthenticationException,
    InvalidConfigurationException,
    ProcessorException,
    SubscriptionNotFoundException,
    ValidationException,
    WebhookException,
)
from paybridge.core.services.payment.paddle.main import (
    PaddleProcessor,
    map_subscription_status,
)


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _classic_subscription(**overrides: Any) -> dict[str, Any]:
    data = {
        "subscription_id": 502198,
        "plan_id": 496199,
        "user_id": 285846,
        "user_email": "a@b.com",
        "state": "active",
        "last_payment": {"amount": 5, "currency": "USD", "date": "2024-01-01"},
        "next_bill_date": "2024-02-01",
        "quantity": 1,
        "passthrough": '{"workspace_id": "ws_1"}',
    }
    data.update(overrides)
    return data


def _processor(handler) -> tuple[PaddleProcessor, RecordingTransport]:
    transport = RecordingTransport(handler)
    processor = PaddleProcessor(
        "12345", "auth_code", "public-key", ProviderEnvironment.SANDBOX, transport=transport
    )
    return processor, transport


class TestPaddleConfiguration:

    @pytest.mark.parametrize(
        "args, field",
        [
            (("", "auth", "key"), "paddle_vendor_id"),
            (("123", "", "key"), "paddle_auth_code"),
            (("123", "auth", ""), "paddle_public_key"),
        ],
    )
    def test_missing_credentials(self, args, field):
        with pytest.raises(InvalidConfigurationException) as exc_info:
            PaddleProcessor(*args)

        assert exc_info.value.field_name == field

    def test_environment_urls(self):
        sandbox = PaddleProcessor("1", "a", "k")
        production = PaddleProcessor("1", "a", "k", ProviderEnvironment.PRODUCTION)

        assert sandbox.base_url == "https://sandbox-vendors.paddle.com/api/2.0"
        assert sandbox.billing_url == "https://sandbox-api.paddle.com"
        assert production.base_url == "https://vendors.paddle.com/api/2.0"
        assert production.billing_url == "https://api.paddle.com"

    async def test_validate_configuration_rejected_credentials(self):
        processor, _ = _processor(
            lambda r: json_response(
                200, {"success": False, "error": {"code": 107, "message": "You don't have permission"}}
            )
        )

        with pytest.raises(InvalidConfigurationException):
            await processor.validate_configuration()

    async def test_classic_requests_carry_vendor_credentials(self):
        processor, transport = _processor(lambda r: json_response(200, {"success": True, "response": {}}))

        await processor.validate_configuration()

        request = transport.requests[0]
        assert request.url.path == "/api/2.0/product/get_products"
        assert _form(request) == {"vendor_id": "12345", "vendor_auth_code": "auth_code"}


class TestPaddleStatusMapping:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("deleted", SubscriptionStatus.CANCELED),
            ("cancelled", SubscriptionStatus.CANCELED),
            ("paused", SubscriptionStatus.PAUSED),
            ("mystery", SubscriptionStatus.INCOMPLETE),
        ],
    )
    def test_map_subscription_status(self, raw, expected):
        assert map_subscription_status(raw) == expected


class TestPaddleCustomers:

    async def test_create_customer_uses_billing_api(self):
        processor, transport = _processor(
            lambda r: json_response(
                201,
                {"data": {"id": "ctm_1", "email": "a@b.com", "name": "Ada",
                          "created_at": "2024-01-01T00:00:00Z"}},
            )
        )

        customer = await processor.create_customer("a@b.com", name="Ada", metadata={"k": "v"})

        assert customer.id == "ctm_1"
        request = transport.requests[0]
        assert request.url.host == "sandbox-api.paddle.com"
        assert request.headers["Authorization"] == "Bearer auth_code"
        assert json.loads(request.content) == {
            "email": "a@b.com", "name": "Ada", "custom_data": {"k": "v"}
        }

    async def test_delete_customer_archives(self):
        processor, transport = _processor(lambda r: json_response(200, {"data": {"id": "ctm_1"}}))

        await processor.delete_customer("ctm_1")

        request = transport.requests[0]
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"status": "archived"}

    async def test_invalid_email(self):
        processor, transport = _processor(lambda r: json_response(200, {}))

        with pytest.raises(ValidationException):
            await processor.create_customer("nope")

        assert transport.requests == []


class TestPaddlePaymentMethods:

    async def test_add_returns_checkout_managed_placeholder(self):
        processor, transport = _processor(lambda r: json_response(200, {}))

        method = await processor.add_payment_method("ctm_1", "tok_1", set_as_default=True)

        assert method.id == "tok_1"
        assert method.is_default is True
        assert method.metadata == {"checkout_managed": True}
        assert transport.requests == []

    async def test_list_is_empty(self):
        processor, _ = _processor(lambda r: json_response(200, {}))

        assert await processor.list_payment_methods("ctm_1") == []

    @pytest.mark.parametrize("operation", ["get_payment_method", "remove_payment_method"])
    async def test_unsupported(self, operation):
        processor, _ = _processor(lambda r: json_response(200, {}))

        with pytest.raises(ProcessorException) as exc_info:
            await getattr(processor, operation)("pm_1")

        assert exc_info.value.code == "unsupported_operation"


class TestPaddleSubscriptions:

    async def test_create_subscription_returns_checkout(self):
        processor, transport = _processor(lambda r: json_response(200, {}))

        subscription = await processor.create_subscription("ctm_1", "496199", trial_days=7)

        assert subscription.status == SubscriptionStatus.INCOMPLETE
        checkout = urlparse(subscription.metadata["checkout_url"])
        query = parse_qs(checkout.query)
        assert checkout.netloc == "sandbox-checkout.paddle.com"
        assert query["product"] == ["496199"]
        assert json.loads(query["passthrough"][0]) == {"customer_id": "ctm_1"}
        assert subscription.trial_end - subscription.trial_start == timedelta(days=7)
        assert transport.requests == []

    async def test_get_subscription(self):
        processor, transport = _processor(
            lambda r: json_response(200, {"success": True, "response": [_classic_subscription()]})
        )

        subscription = await processor.get_subscription("502198")

        assert subscription.id == "502198"
        assert subscription.price_id == "496199"
        assert subscription.customer_id == "285846"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.metadata["workspace_id"] == "ws_1"
        assert _form(transport.requests[0])["subscription_id"] == "502198"

    async def test_get_missing_subscription(self):
        processor, _ = _processor(lambda r: json_response(200, {"success": True, "response": []}))

        with pytest.raises(SubscriptionNotFoundException):
            await processor.get_subscription("1")

    async def test_list_subscriptions_uses_billing_api(self):
        processor, transport = _processor(
            lambda r: json_response(
                200,
                {"data": [{
                    "id": "sub_01",
                    "customer_id": "ctm_1",
                    "status": "trialing",
                    "items": [{"quantity": 2, "price": {"id": "pri_1", "product_id": "pro_1"}}],
                    "current_billing_period": {
                        "starts_at": "2024-01-01T00:00:00Z",
                        "ends_at": "2024-02-01T00:00:00Z",
                    },
                    "scheduled_change": {"action": "cancel"},
                }]},
            )
        )

        subscriptions = await processor.list_subscriptions("ctm_1")

        assert len(subscriptions) == 1
        subscription = subscriptions[0]
        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.price_id == "pri_1"
        assert subscription.quantity == 2
        assert subscription.cancel_at_period_end is True
        assert transport.requests[0].url.params["customer_id"] == "ctm_1"

    async def test_cancel_sets_cancel_at_period_end(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/users_cancel"):
                return json_response(200, {"success": True})
            return json_response(200, {"success": True, "response": [_classic_subscription()]})

        processor, transport = _processor(handler)

        subscription = await processor.cancel_subscription("502198")

        assert subscription.cancel_at_period_end is True
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert transport.requests[1].url.path == "/api/2.0/subscription/users_cancel"

    async def test_cancel_at_period_end_keeps_status_when_reported_deleted(self):
        state = {"value": "active"}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/users_cancel"):
                state["value"] = "deleted"
                return json_response(200, {"success": True})
            return json_response(
                200, {"success": True, "response": [_classic_subscription(state=state["value"])]}
            )

        processor, _ = _processor(handler)

        subscription = await processor.cancel_subscription("502198")

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancel_at_period_end is True

    async def test_cancel_immediately_reports_canceled(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/users_cancel"):
                return json_response(200, {"success": True})
            return json_response(
                200, {"success": True, "response": [_classic_subscription(state="deleted")]}
            )

        processor, transport = _processor(handler)

        subscription = await processor.cancel_subscription("502198", immediate=True)

        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.cancel_at_period_end is False
        assert transport.requests[0].url.path == "/api/2.0/subscription/users_cancel"

    async def test_swap_plan_sends_prorate_flag(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/update"):
                return json_response(200, {"success": True})
            return json_response(
                200, {"success": True, "response": [_classic_subscription(plan_id=777)]}
            )

        processor, transport = _processor(handler)

        subscription = await processor.swap_plan("502198", "777", prorate=False)

        assert subscription.price_id == "777"
        form = _form(transport.requests[0])
        assert form["plan_id"] == "777"
        assert form["prorate"] == "false"

    async def test_resume_unsupported(self):
        processor, _ = _processor(lambda r: json_response(200, {}))

        with pytest.raises(ProcessorException) as exc_info:
            await processor.resume_subscription("502198")

        assert exc_info.value.code == "unsupported_operation"

    async def test_classic_failure_maps_to_processor_exception(self):
        processor, _ = _processor(
            lambda r: json_response(
                200, {"success": False, "error": {"code": 119, "message": "Unable to find requested subscription"}}
            )
        )

        with pytest.raises(ProcessorException) as exc_info:
            await processor.pause_subscription("1")

        assert exc_info.value.code == "119"

    async def test_classic_auth_failure(self):
        processor, _ = _processor(
            lambda r: json_response(
                200, {"success": False, "error": {"code": 108, "message": "Bad auth code"}}
            )
        )

        with pytest.raises(AuthenticationException):
            await processor.get_subscription("1")


class TestPaddleCharges:

    async def test_create_charge_returns_pending_checkout(self):
        processor, _ = _processor(lambda r: json_response(200, {}))

        charge = await processor.create_charge("ctm_1", 1500, "USD")

        assert charge.status == ChargeStatus.PENDING
        assert charge.currency == "usd"
        assert "checkout_url" in charge.metadata

    async def test_refund_sends_major_units(self):
        state = {"refunded": "0"}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/payment/refund"):
                state["refunded"] = "5.00"
                return json_response(200, {"success": True, "response": {"refund_request_id": 1}})
            return json_response(
                200,
                {"success": True, "response": {
                    "order_id": "219233-384",
                    "total": "10.00",
                    "currency": "USD",
                    "status": "completed",
                    "refunded_amount": state["refunded"],
                    "customer_email": "a@b.com",
                }},
            )

        processor, transport = _processor(handler)

        charge = await processor.refund_charge("219233-384", amount=500)

        assert _form(transport.requests[1])["amount"] == "5.00"
        assert charge.amount == 1000
        assert charge.refunded_amount == 500
        assert charge.status == ChargeStatus.SUCCEEDED
        assert charge.refunded is False

    async def test_refund_over_remaining_amount(self):
        processor, transport = _processor(
            lambda r: json_response(
                200,
                {"success": True, "response": {
                    "order_id": "219233-384",
                    "total": "10.00",
                    "currency": "USD",
                    "status": "completed",
                    "refunded_amount": "8.00",
                    "customer_email": "a@b.com",
                }},
            )
        )

        with pytest.raises(ValidationException) as exc_info:
            await processor.refund_charge("219233-384", amount=500)

        assert exc_info.value.code == "refund_exceeds_charge"
        assert not any(r.url.path.endswith("/payment/refund") for r in transport.requests)

    async def test_list_charges_empty(self):
        processor, transport = _processor(lambda r: json_response(200, {}))

        assert await processor.list_charges("ctm_1") == []
        assert transport.requests == []


class TestPaddleWebhooks:

    def _signed_form(self, fields: dict[str, str]) -> str:
        joined = "".join(f"{k}={fields[k]}" for k in sorted(fields))
        signature = hashlib.sha1(joined.encode()).hexdigest()
        body = "&".join(f"{k}={v}" for k, v in fields.items())
        return f"{body}&p_signature={signature}"

    async def test_form_webhook_uses_embedded_signature(self):
        processor, _ = _processor(lambda r: json_response(200, {}))
        payload = self._signed_form(
            {"alert_id": "1", "alert_name": "subscription_created", "subscription_id": "42"}
        )

        event = await processor.handle_webhook(payload)

        assert event.type == "subscription_created"
        assert event.id == "1"
        assert event.data["subscription_id"] == "42"

    async def test_tampered_form_webhook(self):
        processor, _ = _processor(lambda r: json_response(200, {}))
        payload = self._signed_form({"alert_id": "1", "alert_name": "subscription_created"})

        with pytest.raises(WebhookException) as exc_info:
            await processor.handle_webhook(payload.replace("alert_id=1", "alert_id=2"))

        assert exc_info.value.code == "invalid_signature"

    async def test_missing_alert_name(self):
        processor, _ = _processor(lambda r: json_response(200, {}))

        with pytest.raises(WebhookException) as exc_info:
            await processor.handle_webhook('{"alert_id": "1"}')

        assert exc_info.value.code == "missing_event_type"
