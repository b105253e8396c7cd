"""Tests for the Razorpay adapter against a mocked HTTP transport."""
import base64
import hashlib
import hmac
import json

import httpx
import pytest

from marketplace.core.config import settings
from marketplace.core.errors import GatewayError, GatewayUnavailable, RefundFailed
from marketplace.gateways.base import PaymentMethod
from marketplace.gateways.razorpay import RazorpayGateway


def _gateway(handler):
    return RazorpayGateway(
        {
            "key_id": "rzp_test_key",
            "key_secret": "rzp_secret",
            "api_url": "https://api.razorpay.test/v1",
            "timeout": 2.0,
            "transport": httpx.MockTransport(handler),
        }
    )


class TestCreateOrder:
    def test_posts_auto_capture_order_with_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"id": "order_9A", "amount": 10540, "currency": "INR", "status": "created", "receipt": "TXN_1"},
            )

        order = _gateway(handler).create_order(10540, "inr", "TXN_1", {"listing_id": "l-1"})

        assert order.id == "order_9A"
        assert order.amount == 10540
        assert order.status == "created"
        assert seen["path"] == "/v1/orders"
        expected_auth = base64.b64encode(b"rzp_test_key:rzp_secret").decode()
        assert seen["auth"] == f"Basic {expected_auth}"
        assert seen["body"] == {
            "amount": 10540,
            "currency": "INR",
            "receipt": "TXN_1",
            "notes": {"listing_id": "l-1"},
            "payment_capture": 1,
        }

    def test_server_error_is_unavailable(self):
        gw = _gateway(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(GatewayUnavailable) as exc:
            gw.create_order(100, "INR", "TXN_1", {})
        assert exc.value.detail["http_status"] == 502

    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayUnavailable):
            _gateway(handler).create_order(100, "INR", "TXN_1", {})

    def test_bad_request_is_rejection(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}}
            )

        with pytest.raises(GatewayError) as exc:
            _gateway(handler).create_order(1, "INR", "TXN_1", {})

        assert not isinstance(exc.value, GatewayUnavailable)
        assert str(exc.value) == "amount too small"
        assert exc.value.detail["code"] == "BAD_REQUEST_ERROR"


class TestVerifySignature:
    def test_hmac_of_order_and_payment(self):
        gw = _gateway(lambda request: httpx.Response(500))
        signature = hmac.new(b"rzp_secret", b"order_1|pay_1", hashlib.sha256).hexdigest()

        assert gw.verify_signature("order_1", "pay_1", signature)
        assert not gw.verify_signature("order_1", "pay_2", signature)
        assert not gw.verify_signature("order_1", "pay_1", None)
        assert not gw.verify_signature("order_1", "pay_1", "")


class TestFetchPayment:
    def test_card_payment(self):
        def handler(request):
            assert request.url.path == "/v1/payments/pay_1"
            assert request.url.params["expand[]"] == "card"
            return httpx.Response(
                200,
                json={
                    "id": "pay_1",
                    "order_id": "order_1",
                    "status": "captured",
                    "amount": 10540,
                    "currency": "INR",
                    "method": "card",
                    "card": {"last4": "1111", "network": "Visa", "number": "never stored"},
                },
            )

        record = _gateway(handler).fetch_payment_details("pay_1")

        assert record.is_authorized
        assert record.is_captured
        assert record.order_id == "order_1"
        assert record.method == PaymentMethod.CARD
        assert record.details == {"last4": "1111", "brand": "Visa"}

    @pytest.mark.parametrize(
        "payload,method,details",
        [
            ({"method": "upi", "vpa": "buyer@okbank"}, PaymentMethod.UPI, {"upi_id": "buyer@okbank"}),
            ({"method": "netbanking", "bank": "HDFC"}, PaymentMethod.NETBANKING, {"bank": "HDFC"}),
            ({"method": "wallet", "wallet": "paytm"}, PaymentMethod.WALLET, {"wallet": "paytm"}),
            ({"method": "emi"}, PaymentMethod.CARD, {}),
        ],
    )
    def test_other_methods(self, payload, method, details):
        body = {"id": "pay_1", "status": "authorized", "amount": 100, "currency": "INR", **payload}
        record = _gateway(lambda request: httpx.Response(200, json=body)).fetch_payment_details("pay_1")

        assert record.method == method
        assert record.details == details
        assert record.is_authorized
        assert not record.is_captured

    def test_failed_payment_not_authorized(self):
        body = {"id": "pay_1", "status": "failed", "amount": 100, "currency": "INR", "method": "card"}
        record = _gateway(lambda request: httpx.Response(200, json=body)).fetch_payment_details("pay_1")
        assert not record.is_authorized


class TestRefund:
    def test_refund_returns_provider_id(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "rfnd_1", "amount": 5000})

        refund_id = _gateway(handler).refund("pay_1", 5000, {"reason": "damaged"}, idempotency_key="refund-TXN_1-5000")

        assert refund_id == "rfnd_1"
        assert seen["path"] == "/v1/payments/pay_1/refund"
        assert seen["body"] == {"amount": 5000, "notes": {"reason": "damaged"}, "receipt": "refund-TXN_1-5000"}

    def test_rejected_refund_is_refund_failed(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "already fully refunded"}}
            )

        with pytest.raises(RefundFailed, match="already fully refunded"):
            _gateway(handler).refund("pay_1", 5000, {})

    def test_outage_stays_unavailable(self):
        with pytest.raises(GatewayUnavailable):
            _gateway(lambda request: httpx.Response(503)).refund("pay_1", 5000, {})


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(500)

        gw = _gateway(handler)
        for _ in range(settings.cb_failure_threshold + 1):
            with pytest.raises(GatewayUnavailable):
                gw.fetch_payment_details("pay_1")

        # the last call is short-circuited without touching the network
        assert len(calls) == settings.cb_failure_threshold

    def test_rejections_do_not_trip(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(400, json={"error": {"description": "invalid id"}})

        gw = _gateway(handler)
        for _ in range(settings.cb_failure_threshold + 2):
            with pytest.raises(GatewayError):
                gw.fetch_payment_details("pay_bad")

        assert len(calls) == settings.cb_failure_threshold + 2
