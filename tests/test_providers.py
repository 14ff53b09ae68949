"""Test the PhonePe and Razorpay adapters against mocked HTTP transports."""
import base64
import json
from decimal import Decimal

import httpx
import pytest

from core.errors import GatewayRejected, GatewayTimeoutError, GatewayTransientError
from core.integrations.webhooks import sha256_checksum, sign_hmac_sha256
from core.resilience.circuit_breaker import CircuitBreaker
from core.resilience.retry import RetryPolicy
from patterns.domain_config import PhonePeConfig, RazorpayConfig
from verticals.bookstore.payments import ProviderRegistry
from verticals.bookstore.payments.base import PaymentInitiation, ProviderPaymentState, RefundRequest
from verticals.bookstore.payments.phonepe import PhonePeProvider, decode_payload, encode_payload
from verticals.bookstore.payments.razorpay import RazorpayProvider

PHONEPE = PhonePeConfig(merchant_id="MERCHANT", salt_key="salt", salt_index="1")
RAZORPAY = RazorpayConfig(key_id="rzp_key", key_secret="rzp_secret", webhook_secret="whsec")

INITIATION = PaymentInitiation(
    transaction_id="6f1c2d9e-0000-4000-8000-000000000001",
    order_id="0b7e4c1a-0000-4000-8000-000000000002",
    amount=Decimal("1197.00"),
    currency="INR",
    user_ref="u1",
    callback_url="http://localhost:8000/api/bookstore/payments/webhook/phonepe",
    redirect_url="http://localhost:3000/payment/return?orderId=0b7e4c1a",
    idempotency_key="abc",
)


async def _no_sleep(_delay):
    return None


def phonepe_with(handler):
    return PhonePeProvider(PHONEPE, transport=httpx.MockTransport(handler))


def razorpay_with(handler):
    return RazorpayProvider(RAZORPAY, transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# PhonePe
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_phonepe_initiate_signs_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen["path"] = request.url.path
        seen["verify"] = request.headers["x-verify"]
        seen["encoded"] = body["request"]
        return httpx.Response(
            200,
            json={
                "success": True,
                "code": "PAYMENT_INITIATED",
                "data": {"instrumentResponse": {"redirectInfo": {"url": "https://phonepe.test/pay"}}},
            },
        )

    result = await phonepe_with(handler).initiate(INITIATION)

    assert seen["path"].endswith("/pg/v1/pay")
    assert seen["verify"] == sha256_checksum(seen["encoded"] + "/pg/v1/pay", "salt", "1")
    payload = decode_payload(seen["encoded"])
    assert payload["amount"] == 119700
    assert payload["merchantTransactionId"] == INITIATION.transaction_id.replace("-", "")
    assert result.gateway_ref_id == payload["merchantTransactionId"]
    assert result.redirect_url == "https://phonepe.test/pay"
    assert result.action == "REDIRECT"


@pytest.mark.asyncio
async def test_phonepe_unsuccessful_body_is_rejection():
    def handler(request):
        return httpx.Response(200, json={"success": False, "code": "BAD_REQUEST", "message": "Invalid amount"})

    with pytest.raises(GatewayRejected) as exc_info:
        await phonepe_with(handler).initiate(INITIATION)
    assert exc_info.value.message == "Invalid amount"


@pytest.mark.asyncio
async def test_http_failures_map_to_gateway_errors():
    provider = phonepe_with(lambda request: httpx.Response(503, text="down"))
    with pytest.raises(GatewayTransientError) as exc_info:
        await provider.initiate(INITIATION)
    assert exc_info.value.status == 503

    provider = phonepe_with(lambda request: httpx.Response(401, json={"code": "UNAUTHORIZED"}))
    with pytest.raises(GatewayRejected):
        await provider.initiate(INITIATION)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    provider = phonepe_with(slow)
    with pytest.raises(GatewayTimeoutError):
        await provider.initiate(INITIATION)
    assert provider.get_health().failed_requests == 1


def test_phonepe_webhook_checksum():
    provider = PhonePeProvider(PHONEPE)
    data = {"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "TXN1", "amount": 119700}}
    body = json.dumps({"response": encode_payload(data)}).encode()

    verified = provider.verify_webhook({"x-verify": sha256_checksum(body, "salt", "1")}, body)
    assert verified.is_valid
    assert verified.success is True
    assert verified.reference == "TXN1"

    forged = provider.verify_webhook({"x-verify": sha256_checksum(body, "other", "1")}, body)
    assert not forged.is_valid
    assert not provider.verify_webhook({}, body).is_valid


def test_phonepe_webhook_failure_code():
    provider = PhonePeProvider(PHONEPE)
    data = {"code": "PAYMENT_ERROR", "data": {"merchantTransactionId": "TXN1"}}
    body = json.dumps({"response": base64.b64encode(json.dumps(data).encode()).decode()}).encode()
    verified = provider.verify_webhook({"x-verify": sha256_checksum(body, "salt", "1")}, body)
    assert verified.success is False


def test_phonepe_webhook_with_undecodable_body_is_invalid():
    provider = PhonePeProvider(PHONEPE)
    verified = provider.verify_webhook({"x-verify": "abc###1"}, b"\xff\xfe garbage")
    assert not verified.is_valid
    assert verified.error == "Checksum mismatch"


def test_signed_webhook_that_is_not_an_object_is_invalid():
    body = b"[1, 2]"
    phonepe = PhonePeProvider(PHONEPE).verify_webhook({"x-verify": sha256_checksum(body, "salt", "1")}, body)
    razorpay = RazorpayProvider(RAZORPAY).verify_webhook(
        {"x-razorpay-signature": sign_hmac_sha256(body, "whsec")}, body
    )
    for verified in (phonepe, razorpay):
        assert not verified.is_valid
        assert verified.error == "Malformed payload: expected a JSON object"


@pytest.mark.asyncio
async def test_phonepe_status_lookup_signs_the_path():
    seen = {}
    codes = iter(["PAYMENT_SUCCESS", "PAYMENT_ERROR", "PAYMENT_PENDING"])

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["verify"] = request.headers["x-verify"]
        seen["merchant"] = request.headers["x-merchant-id"]
        return httpx.Response(200, json={"success": True, "code": next(codes), "data": {}})

    provider = phonepe_with(handler)
    states = [(await provider.get_payment_status("T1")).state for _ in range(3)]

    assert seen["path"].endswith("/pg/v1/status/MERCHANT/T1")
    assert seen["verify"] == sha256_checksum("/pg/v1/status/MERCHANT/T1", "salt", "1")
    assert seen["merchant"] == "MERCHANT"
    assert states == [ProviderPaymentState.SUCCESS, ProviderPaymentState.FAILED, ProviderPaymentState.PENDING]


@pytest.mark.asyncio
async def test_phonepe_unsuccessful_status_is_failure():
    provider = phonepe_with(
        lambda request: httpx.Response(200, json={"success": False, "code": "TRANSACTION_NOT_FOUND"})
    )
    status = await provider.get_payment_status("T1")
    assert status.state == ProviderPaymentState.FAILED
    assert status.raw_response["code"] == "TRANSACTION_NOT_FOUND"


# ---------------------------------------------------------------------------
# Razorpay
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_razorpay_initiate_creates_order():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_123", "status": "created"})

    result = await razorpay_with(handler).initiate(INITIATION)

    expected_auth = "Basic " + base64.b64encode(b"rzp_key:rzp_secret").decode()
    assert seen["auth"] == expected_auth
    assert seen["body"]["amount"] == 119700
    assert seen["body"]["notes"]["transactionId"] == INITIATION.transaction_id
    assert result.gateway_ref_id == "order_123"
    assert result.action == "MODAL"
    assert result.client_payload["keyId"] == "rzp_key"


@pytest.mark.asyncio
async def test_razorpay_refund_uses_captured_payment():
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path))
        if request.method == "GET":
            return httpx.Response(
                200,
                json={"items": [{"id": "pay_failed", "status": "failed"}, {"id": "pay_ok", "status": "captured"}]},
            )
        return httpx.Response(200, json={"id": "rfnd_1", "status": "processed"})

    result = await razorpay_with(handler).refund(
        RefundRequest(refund_id="r1", transaction_id="t1", gateway_ref_id="order_123", amount=Decimal("100"))
    )

    assert paths == [("GET", "/v1/orders/order_123/payments"), ("POST", "/v1/payments/pay_ok/refund")]
    assert result.gateway_refund_id == "rfnd_1"


@pytest.mark.asyncio
async def test_razorpay_refund_without_capture_rejected():
    provider = razorpay_with(lambda request: httpx.Response(200, json={"items": []}))
    with pytest.raises(GatewayRejected):
        await provider.refund(
            RefundRequest(refund_id="r1", transaction_id="t1", gateway_ref_id="order_123", amount=Decimal("1"))
        )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payments, expected",
    [
        ([{"id": "pay_1", "status": "failed"}, {"id": "pay_2", "status": "captured"}], ProviderPaymentState.SUCCESS),
        ([{"id": "pay_1", "status": "failed"}], ProviderPaymentState.FAILED),
        ([{"id": "pay_1", "status": "authorized"}], ProviderPaymentState.PENDING),
        ([], ProviderPaymentState.PENDING),
    ],
)
async def test_razorpay_status_follows_order_payments(payments, expected):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        return httpx.Response(200, json={"items": payments})

    status = await razorpay_with(handler).get_payment_status("order_123")

    assert seen["path"].endswith("/orders/order_123/payments")
    assert status.state == expected


def test_razorpay_webhook_signature():
    provider = RazorpayProvider(RAZORPAY)
    body = json.dumps(
        {"event": "payment.captured", "payload": {"payment": {"entity": {"order_id": "order_123"}}}}
    ).encode()

    verified = provider.verify_webhook({"x-razorpay-signature": sign_hmac_sha256(body, "whsec")}, body)
    assert verified.is_valid
    assert verified.success is True
    assert verified.reference == "order_123"

    assert not provider.verify_webhook({"x-razorpay-signature": "nope"}, body).is_valid


def test_razorpay_unrelated_event_has_no_outcome():
    provider = RazorpayProvider(RAZORPAY)
    body = json.dumps({"event": "refund.processed", "payload": {}}).encode()
    verified = provider.verify_webhook({"x-razorpay-signature": sign_hmac_sha256(body, "whsec")}, body)
    assert verified.is_valid
    assert verified.success is None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_registry_retries_transient_failures_inside_breaker():
    responses = iter([httpx.Response(502), httpx.Response(502), httpx.Response(200, json={"id": "order_9"})])
    provider = razorpay_with(lambda request: next(responses))
    registry = ProviderRegistry(
        retry=RetryPolicy(max_attempts=3, base_delay=0, retry_on=(GatewayTransientError,), sleep=_no_sleep),
        breaker_factory=lambda name: CircuitBreaker(name=name, failure_threshold=1),
    )
    registry.register(provider)

    result = await registry.call("razorpay", lambda p: p.initiate(INITIATION))

    assert result.gateway_ref_id == "order_9"
    assert registry.snapshot()["razorpay"]["breaker"]["state"] == "closed"
    assert provider.get_health().total_requests == 3
