"""
Tests for the Braintree adapter.
"""

import json
from datetime import timedelta
from typing import Any

import httpx
import pytest

from conftest import RecordingTransport, json_response
from paybridge.core.enums import (
    ChargeStatus,
    PaymentMethodType,
    ProviderEnvironment,
    SubscriptionStatus,
)
from paybridge.core.exceptions.types import (
    AuthenticationException,
    CustomerNotFoundException,
    InvalidConfigurationException,
    PaymentMethodException,
    ProcessorException,
    ValidationException,
    WebhookException,
)
from paybridge.core.services.payment.braintree.main import (
    BraintreeProcessor,
    map_subscription_status,
    map_transaction_status,
    split_name,
)
from paybridge.core.services.payment.types import utcnow
from paybridge.core.services.payment.webhooks import compute_hmac_sha256

MERCHANT_PATH = "/merchants/merchant_1"


def _subscription(**overrides: Any) -> dict[str, Any]:
    now = utcnow()
    data = {
        "id": "sub_1",
        "planId": "basic",
        "status": "Active",
        "billingPeriodStartDate": (now - timedelta(days=15)).isoformat(),
        "billingPeriodEndDate": (now + timedelta(days=15)).isoformat(),
        "currentBillingCycle": 3,
        "neverExpires": True,
        "transactions": [{"customer": {"id": "cust_1"}}],
    }
    data.update(overrides)
    return data


def _transaction(**overrides: Any) -> dict[str, Any]:
    data = {
        "id": "txn_1",
        "amount": "10.00",
        "currencyIsoCode": "USD",
        "status": "settled",
        "customer": {"id": "cust_1"},
        "createdAt": "2024-01-01T00:00:00Z",
    }
    data.update(overrides)
    return data


def _processor(handler) -> tuple[BraintreeProcessor, RecordingTransport]:
    transport = RecordingTransport(handler)
    processor = BraintreeProcessor(
        "merchant_1", "public_1", "private_1", ProviderEnvironment.SANDBOX, transport=transport
    )
    return processor, transport


class TestBraintreeHelpers:

    @pytest.mark.parametrize(
        "name, expected",
        [
            (None, {}),
            ("Ada", {"firstName": "Ada"}),
            ("Ada Lovelace", {"firstName": "Ada", "lastName": "Lovelace"}),
            ("Ada King Lovelace", {"firstName": "Ada", "lastName": "King Lovelace"}),
        ],
    )
    def test_split_name(self, name, expected):
        assert split_name(name) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Active", SubscriptionStatus.ACTIVE),
            ("Pending", SubscriptionStatus.TRIALING),
            ("Past Due", SubscriptionStatus.PAST_DUE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("Expired", SubscriptionStatus.CANCELED),
            ("Canceled", SubscriptionStatus.CANCELED),
            ("Unknown", SubscriptionStatus.INCOMPLETE),
        ],
    )
    def test_map_subscription_status(self, raw, expected):
        assert map_subscription_status(raw) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("settled", ChargeStatus.SUCCEEDED),
            ("submitted_for_settlement", ChargeStatus.SUCCEEDED),
            ("authorized", ChargeStatus.PENDING),
            ("voided", ChargeStatus.REFUNDED),
            ("processor_declined", ChargeStatus.FAILED),
            ("brand_new_status", ChargeStatus.PENDING),
        ],
    )
    def test_map_transaction_status(self, raw, expected):
        assert map_transaction_status(raw) == expected


class TestBraintreeConfiguration:

    def test_missing_private_key(self):
        with pytest.raises(InvalidConfigurationException) as exc_info:
            BraintreeProcessor("merchant_1", "public_1", "")

        assert exc_info.value.field_name == "braintree_private_key"

    def test_base_url_and_capabilities(self):
        sandbox = BraintreeProcessor("m", "pub", "priv")
        production = BraintreeProcessor("m", "pub", "priv", ProviderEnvironment.PRODUCTION)

        assert sandbox.base_url == "https://api.sandbox.braintreegateway.com/merchants/m"
        assert production.base_url == "https://api.braintreegateway.com/merchants/m"
        assert sandbox.supports_trial_periods is True
        assert sandbox.supports_plan_swapping is True
        assert sandbox.supports_proration is False

    async def test_validate_configuration_generates_client_token(self):
        processor, transport = _processor(
            lambda r: json_response(201, {"client_token": {"value": "tok_abc"}})
        )

        assert await processor.validate_configuration() is True

        request = transport.requests[0]
        assert request.url.path == f"{MERCHANT_PATH}/client_token"
        assert request.headers["Braintree-Version"] == "2024-11-01"
        assert request.headers["Authorization"].startswith("Basic ")

    async def test_validate_configuration_bad_credentials(self):
        processor, _ = _processor(lambda r: json_response(401, {"message": "Unauthorized"}))

        with pytest.raises(InvalidConfigurationException):
            await processor.validate_configuration()

    async def test_client_token_for_customer(self):
        processor, transport = _processor(
            lambda r: json_response(201, {"client_token": {"value": "tok_abc"}})
        )

        token = await processor.generate_client_token("cust_1")

        assert token == "tok_abc"
        assert json.loads(transport.requests[0].content) == {
            "client_token": {"version": 2, "customerId": "cust_1"}
        }

    async def test_paypal_checkout_token(self):
        processor, transport = _processor(
            lambda r: json_response(201, {"paypalAccount": {"token": "pp_tok"}})
        )

        token = await processor.create_paypal_checkout_token(
            1999, "usd", return_url="https://app/return"
        )

        assert token == "pp_tok"
        nonce = json.loads(transport.requests[0].content)["payment_method_nonce"]
        assert nonce == {
            "amount": "19.99",
            "currencyIsoCode": "USD",
            "returnUrl": "https://app/return",
        }


class TestBraintreeCustomers:

    async def test_create_customer_splits_name(self):
        processor, transport = _processor(
            lambda r: json_response(
                201,
                {"customer": {"id": "cust_1", "email": "a@b.com", "firstName": "Ada",
                              "lastName": "Lovelace", "createdAt": "2024-01-01T00:00:00Z"}},
            )
        )

        customer = await processor.create_customer("a@b.com", name="Ada Lovelace")

        assert customer.name == "Ada Lovelace"
        assert json.loads(transport.requests[0].content) == {
            "customer": {"email": "a@b.com", "firstName": "Ada", "lastName": "Lovelace"}
        }

    async def test_missing_customer(self):
        processor, _ = _processor(
            lambda r: json_response(404, {"apiErrorResponse": {"message": "Customer not found"}})
        )

        with pytest.raises(CustomerNotFoundException):
            await processor.get_customer("cust_x")

    async def test_auth_errors_are_basic_auth(self):
        processor, _ = _processor(lambda r: json_response(403, {"message": "Forbidden"}))

        with pytest.raises(AuthenticationException) as exc_info:
            await processor.get_customer("cust_1")

        assert exc_info.value.authentication_type == "basic_auth"


class TestBraintreePaymentMethods:

    async def test_add_payment_method_as_default(self):
        processor, transport = _processor(
            lambda r: json_response(
                201,
                {"creditCard": {"token": "pm_1", "customerId": "cust_1", "last4": "1111",
                                "cardType": "Visa", "expirationMonth": "12",
                                "expirationYear": "2030", "default": True}},
            )
        )

        method = await processor.add_payment_method("cust_1", "nonce_1", set_as_default=True)

        assert method.id == "pm_1"
        assert method.type == PaymentMethodType.CARD
        assert method.last4 == "1111"
        assert method.expiry_year == 2030
        assert method.is_default is True
        body = json.loads(transport.requests[0].content)
        assert body == {
            "payment_method": {
                "customerId": "cust_1",
                "paymentMethodNonce": "nonce_1",
                "options": {"makeDefault": True},
            }
        }

    async def test_list_payment_methods_includes_paypal(self):
        processor, _ = _processor(
            lambda r: json_response(
                200,
                {"customer": {
                    "id": "cust_1",
                    "creditCards": [{"token": "pm_1", "last4": "1111", "default": True}],
                    "paypalAccounts": [{"token": "pp_1", "email": "a@b.com", "default": False}],
                }},
            )
        )

        methods = await processor.list_payment_methods("cust_1")

        assert [m.id for m in methods] == ["pm_1", "pp_1"]
        assert methods[0].is_default is True
        assert methods[1].type == PaymentMethodType.PAYPAL
        assert methods[1].metadata == {"email": "a@b.com"}

    async def test_declined_card(self):
        processor, _ = _processor(
            lambda r: json_response(
                422,
                {"apiErrorResponse": {
                    "message": "Do Not Honor",
                    "errors": {"errors": [{"code": "2000", "attribute": "number"}]},
                }},
            )
        )

        with pytest.raises(PaymentMethodException) as exc_info:
            await processor.add_payment_method("cust_1", "nonce_bad")

        assert exc_info.value.code == "card_declined"

    async def test_validation_error(self):
        processor, _ = _processor(
            lambda r: json_response(
                422,
                {"apiErrorResponse": {
                    "message": "Email is an invalid format.",
                    "errors": {"errors": [{"code": "81604", "attribute": "email"}]},
                }},
            )
        )

        with pytest.raises(ValidationException) as exc_info:
            await processor.update_customer("cust_1", name="Ada")

        assert exc_info.value.field_name == "email"


class TestBraintreeSubscriptions:

    async def test_create_subscription_with_trial(self):
        processor, transport = _processor(
            lambda r: json_response(201, {"subscription": _subscription(status="Pending", trialPeriod=True)})
        )

        subscription = await processor.create_subscription(
            "cust_1", "basic", payment_method_id="pm_1", trial_days=14
        )

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_end - subscription.trial_start == timedelta(days=14)
        body = json.loads(transport.requests[0].content)["subscription"]
        assert body == {
            "planId": "basic",
            "paymentMethodToken": "pm_1",
            "trialPeriod": True,
            "trialDuration": 14,
            "trialDurationUnit": "day",
        }

    async def test_quantity_unsupported(self):
        processor, transport = _processor(lambda r: json_response(200, {}))

        with pytest.raises(ProcessorException) as exc_info:
            await processor.create_subscription("cust_1", "basic", quantity=3)

        assert exc_info.value.code == "unsupported_operation"
        assert transport.requests == []

    async def test_cancel_at_period_end_caps_billing_cycles(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return json_response(200, {"subscription": _subscription()})
            return json_response(
                200,
                {"subscription": _subscription(neverExpires=False, numberOfBillingCycles=3)},
            )

        processor, transport = _processor(handler)

        subscription = await processor.cancel_subscription("sub_1")

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancel_at_period_end is True
        assert json.loads(transport.requests[1].content) == {
            "subscription": {"neverExpires": False, "numberOfBillingCycles": 3}
        }

    async def test_cancel_immediately(self):
        processor, transport = _processor(
            lambda r: json_response(200, {"subscription": _subscription(status="Canceled")})
        )

        subscription = await processor.cancel_subscription("sub_1", immediate=True)

        assert subscription.status == SubscriptionStatus.CANCELED
        assert transport.requests[0].method == "PUT"
        assert transport.requests[0].url.path == f"{MERCHANT_PATH}/subscriptions/sub_1/cancel"

    async def test_list_subscriptions_from_payment_methods(self):
        processor, _ = _processor(
            lambda r: json_response(
                200,
                {"customer": {
                    "id": "cust_1",
                    "creditCards": [{"token": "pm_1", "subscriptions": [_subscription()]}],
                    "paypalAccounts": [{"token": "pp_1", "subscriptions": [_subscription(id="sub_2")]}],
                }},
            )
        )

        subscriptions = await processor.list_subscriptions("cust_1")

        assert [s.id for s in subscriptions] == ["sub_1", "sub_2"]
        assert all(s.customer_id == "cust_1" for s in subscriptions)

    async def test_swap_plan_records_proration_estimate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/subscriptions/sub_1") and request.method == "GET":
                return json_response(200, {"subscription": _subscription()})
            if path.endswith("/subscriptions/sub_1/cancel"):
                return json_response(200, {"subscription": _subscription(status="Canceled")})
            if path.endswith("/customers/cust_1"):
                return json_response(
                    200,
                    {"customer": {"id": "cust_1", "creditCards": [{"token": "pm_1", "default": True}]}},
                )
            return json_response(201, {"subscription": _subscription(id="sub_2", planId="pro")})

        processor, transport = _processor(handler)

        subscription = await processor.swap_plan("sub_1", "pro")

        assert subscription.id == "sub_2"
        assert subscription.price_id == "pro"
        assert subscription.metadata["swapped_from"] == "sub_1"
        assert 490 <= int(subscription.metadata["proration_amount"]) <= 510
        created = json.loads(transport.requests[-1].content)["subscription"]
        assert created == {"planId": "pro", "paymentMethodToken": "pm_1"}

    async def test_swap_plan_without_proration(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/customers/cust_1"):
                return json_response(
                    200,
                    {"customer": {"id": "cust_1", "creditCards": [{"token": "pm_1", "default": True}]}},
                )
            if request.url.path.endswith("/cancel"):
                return json_response(200, {"subscription": _subscription(status="Canceled")})
            if request.method == "GET":
                return json_response(200, {"subscription": _subscription()})
            return json_response(201, {"subscription": _subscription(id="sub_2", planId="pro")})

        processor, _ = _processor(handler)

        subscription = await processor.swap_plan("sub_1", "pro", prorate=False)

        assert subscription.metadata["proration_amount"] == "0"

    async def test_swap_plan_without_transactions_uses_payment_method(self):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/subscriptions/sub_1") and request.method == "GET":
                return json_response(
                    200,
                    {
                        "subscription": _subscription(
                            status="Pending", transactions=[], paymentMethodToken="pm_9"
                        )
                    },
                )
            if path.endswith("/payment_methods/pm_9"):
                return json_response(
                    200, {"creditCard": {"token": "pm_9", "customerId": "cust_9", "last4": "4242"}}
                )
            if path.endswith("/cancel"):
                return json_response(200, {"subscription": _subscription(status="Canceled")})
            return json_response(201, {"subscription": _subscription(id="sub_2", planId="pro")})

        processor, transport = _processor(handler)

        subscription = await processor.swap_plan("sub_1", "pro")

        assert subscription.id == "sub_2"
        assert subscription.customer_id == "cust_9"
        assert [(r.method, r.url.path.removeprefix(MERCHANT_PATH)) for r in transport.requests] == [
            ("GET", "/subscriptions/sub_1"),
            ("GET", "/payment_methods/pm_9"),
            ("PUT", "/subscriptions/sub_1/cancel"),
            ("POST", "/subscriptions"),
        ]
        created = json.loads(transport.requests[-1].content)["subscription"]
        assert created == {"planId": "pro", "paymentMethodToken": "pm_9"}

    async def test_swap_plan_without_payment_method_keeps_subscription(self):
        processor, transport = _processor(
            lambda r: json_response(
                200, {"subscription": _subscription(status="Pending", transactions=[])}
            )
        )

        with pytest.raises(PaymentMethodException) as exc_info:
            await processor.swap_plan("sub_1", "pro")

        assert exc_info.value.code == "payment_method_required"
        assert [r.method for r in transport.requests] == ["GET"]

    @pytest.mark.parametrize("operation", ["resume_subscription", "pause_subscription"])
    async def test_unsupported(self, operation):
        processor, _ = _processor(lambda r: json_response(200, {}))

        with pytest.raises(ProcessorException) as exc_info:
            await getattr(processor, operation)("sub_1")

        assert exc_info.value.code == "unsupported_operation"


class TestBraintreeCharges:

    async def test_create_charge_uses_major_units(self):
        processor, transport = _processor(
            lambda r: json_response(201, {"transaction": _transaction(status="submitted_for_settlement")})
        )

        charge = await processor.create_charge("cust_1", 1000, "usd", payment_method_id="pm_1")

        assert charge.amount == 1000
        assert charge.status == ChargeStatus.SUCCEEDED
        body = json.loads(transport.requests[0].content)["transaction"]
        assert body["amount"] == "10.00"
        assert body["options"] == {"submitForSettlement": True}

    async def test_partial_refund(self):
        state = {"refunded": None}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/refund"):
                state["refunded"] = "4.00"
                return json_response(201, {"transaction": _transaction(id="txn_r")})
            return json_response(200, {"transaction": _transaction(refundedAmount=state["refunded"])})

        processor, transport = _processor(handler)

        charge = await processor.refund_charge("txn_1", amount=400)

        assert charge.refunded_amount == 400
        assert charge.status == ChargeStatus.SUCCEEDED
        assert charge.refunded is False
        assert json.loads(transport.requests[1].content) == {"transaction": {"amount": "4.00"}}

    async def test_refund_over_remaining_amount(self):
        processor, transport = _processor(
            lambda r: json_response(200, {"transaction": _transaction(refundedAmount="6.00")})
        )

        with pytest.raises(ValidationException) as exc_info:
            await processor.refund_charge("txn_1", amount=500)

        assert exc_info.value.code == "refund_exceeds_charge"
        assert not any(r.url.path.endswith("/refund") for r in transport.requests)

    async def test_list_charges_honours_limit(self):
        processor, transport = _processor(
            lambda r: json_response(
                200, {"transactions": [_transaction(id=f"txn_{i}") for i in range(5)]}
            )
        )

        charges = await processor.list_charges("cust_1", limit=2)

        assert [c.id for c in charges] == ["txn_0", "txn_1"]
        assert json.loads(transport.requests[0].content) == {
            "search": {"customerId": {"is": "cust_1"}}
        }


class TestBraintreeWebhooks:

    async def test_signed_webhook(self):
        processor, _ = _processor(lambda r: json_response(200, {}))
        payload = '{"kind":"subscription_charged_successfully","id":"wh_1","timestamp":"2024-01-01T00:00:00Z"}'

        event = await processor.handle_webhook(payload, compute_hmac_sha256("private_1", payload))

        assert event.type == "subscription_charged_successfully"
        assert event.id == "wh_1"

    async def test_invalid_signature(self):
        processor, _ = _processor(lambda r: json_response(200, {}))
        payload = '{"kind":"check"}'

        with pytest.raises(WebhookException) as exc_info:
            await processor.handle_webhook(payload, compute_hmac_sha256("wrong", payload))

        assert exc_info.value.code == "invalid_signature"

    async def test_missing_kind(self):
        processor, _ = _processor(lambda r: json_response(200, {}))

        with pytest.raises(WebhookException) as exc_info:
            await processor.handle_webhook('{"id":"wh_1"}')

        assert exc_info.value.code == "missing_event_type"
