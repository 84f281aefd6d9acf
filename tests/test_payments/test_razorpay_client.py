"""
Tests for the Razorpay REST adapter.

Requests are answered by ``httpx.MockTransport`` handlers, so no network
traffic leaves the test process.
"""

import json
from decimal import Decimal

import httpx
import pytest

from storefront.services.payments.gateway import GatewayError, GatewayPaymentStatus
from storefront.services.payments.razorpay_client import RazorpayClient


def _client(handler) -> RazorpayClient:
    return RazorpayClient(
        key_id="rzp_test_key",
        key_secret="rzp_secret",
        base_url="https://api.razorpay.test/v1/",
        transport=httpx.MockTransport(handler),
    )


# ============================================================================
# Order and Payment Tests
# ============================================================================


class TestRazorpayOrders:
    """Tests for order creation and payment lookup."""

    async def test_create_order_sends_amount_in_paise(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "order_ABC", "status": "created"})

        order = await _client(handler).create_gateway_order(
            Decimal("1180.5"), "inr", "order-ref-1", notes={"buyer": "buyer-1"}
        )

        assert order.gateway_order_id == "order_ABC"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/orders"
        assert seen["auth"].startswith("Basic ")
        assert seen["body"] == {
            "amount": 118050,
            "currency": "INR",
            "receipt": "order-ref-1",
            "notes": {"buyer": "buyer-1"},
        }

    @pytest.mark.parametrize(
        "remote_status,expected",
        [
            ("captured", GatewayPaymentStatus.CAPTURED),
            ("authorized", GatewayPaymentStatus.AUTHORIZED),
            ("failed", GatewayPaymentStatus.FAILED),
            ("something_new", GatewayPaymentStatus.UNKNOWN),
        ],
    )
    async def test_fetch_payment_maps_status(self, remote_status, expected):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1"
            return httpx.Response(
                200, json={"id": "pay_1", "status": remote_status, "order_id": "order_ABC"}
            )

        payment = await _client(handler).fetch_gateway_payment("pay_1")

        assert payment.status == expected
        assert payment.gateway_order_id == "order_ABC"

    def test_keys_exposed_for_checkout_and_signatures(self):
        client = _client(lambda request: httpx.Response(200, json={}))

        assert client.public_key == "rzp_test_key"
        assert client.signing_secret == "rzp_secret"


# ============================================================================
# Refund Tests
# ============================================================================


class TestRazorpayRefunds:
    """Tests for refund creation."""

    async def test_refund_carries_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("x-idempotency-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "rfnd_1", "status": "processed"})

        refund = await _client(handler).create_refund(
            "pay_1", Decimal("250.00"), "INR", idempotency_key="refund_abc"
        )

        assert refund.gateway_refund_id == "rfnd_1"
        assert refund.status == "processed"
        assert seen["path"] == "/v1/payments/pay_1/refund"
        assert seen["key"] == "refund_abc"
        assert seen["body"]["amount"] == 25000
        assert seen["body"]["receipt"] == "refund_abc"


# ============================================================================
# Error Handling Tests
# ============================================================================


class TestRazorpayErrors:
    """Tests for error classification."""

    async def test_server_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).fetch_gateway_payment("pay_1")

        assert exc_info.value.retryable is True
        assert exc_info.value.gateway == "razorpay"

    async def test_rate_limit_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"description": "Too many requests"}})

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).fetch_gateway_payment("pay_1")

        assert exc_info.value.retryable is True

    async def test_bad_request_is_not_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": {"description": "The amount must be atleast INR 1.00"}}
            )

        with pytest.raises(GatewayError, match="atleast INR 1.00") as exc_info:
            await _client(handler).create_gateway_order(Decimal("0.10"), "INR", "ref")

        assert exc_info.value.retryable is False

    async def test_network_failure_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(GatewayError) as exc_info:
            await _client(handler).create_refund("pay_1", Decimal("1"), "INR", "refund_x")

        assert exc_info.value.retryable is True
