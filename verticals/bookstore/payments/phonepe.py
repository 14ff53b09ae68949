"""PhonePe payment provider.

Requests are a base64-encoded JSON payload posted as ``{"request": b64}``
with an ``X-VERIFY`` header of ``sha256(b64 + endpoint + salt_key)###salt_index``.
Webhooks carry ``{"response": b64}`` signed as ``sha256(raw_body + salt_key)###salt_index``
in the ``x-verify`` header. Amounts are in paise.
"""

import base64
import json
import time
from typing import Any, Mapping, Optional

import httpx
import structlog

from core.errors import GatewayRejected
from core.integrations.adapter_base import AdapterBase, AdapterRequest
from core.integrations.webhooks import WebhookVerification, sha256_checksum, verify_signature
from patterns.domain_config import PhonePeConfig
from verticals.bookstore.payments.base import (
    PaymentInitiation,
    PaymentInitiationResult,
    PaymentProvider,
    PaymentStatusResult,
    ProviderPaymentState,
    RefundRequest,
    RefundResult,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

PAY_ENDPOINT = "/pg/v1/pay"
REFUND_ENDPOINT = "/pg/v1/refund"
STATUS_ENDPOINT = "/pg/v1/status/{merchant_id}/{transaction_id}"


def encode_payload(payload: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode()).decode()


def decode_payload(encoded: str) -> dict[str, Any]:
    return json.loads(base64.b64decode(encoded).decode())


class PhonePeProvider(AdapterBase, PaymentProvider):
    name = "phonepe"

    def __init__(
        self,
        config: PhonePeConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.config = config
        self.base_url = config.base_url

    def _checksum(self, encoded: str, endpoint: str) -> str:
        return sha256_checksum(encoded + endpoint, self.config.salt_key, self.config.salt_index)

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        encoded = encode_payload(payload)
        response = await self.request(
            AdapterRequest(
                method="POST",
                path=endpoint,
                body={"request": encoded},
                headers={
                    "Content-Type": "application/json",
                    "X-VERIFY": self._checksum(encoded, endpoint),
                },
            )
        )
        data = response.data if isinstance(response.data, dict) else {"raw": response.data}
        return {"endpoint": endpoint, "payload": payload}, data

    async def initiate(self, request: PaymentInitiation) -> PaymentInitiationResult:
        merchant_transaction_id = request.transaction_id.replace("-", "")
        payload = {
            "merchantId": self.config.merchant_id,
            "merchantTransactionId": merchant_transaction_id,
            "merchantUserId": request.user_ref,
            "amount": to_minor_units(request.amount),
            "redirectUrl": request.redirect_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": request.callback_url,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        raw_request, data = await self._post(PAY_ENDPOINT, payload)

        if not data.get("success"):
            raise GatewayRejected(
                data.get("message") or "PhonePe payment initiation failed",
                provider=self.name,
                details={"code": data.get("code")},
            )

        redirect_info = (
            data.get("data", {}).get("instrumentResponse", {}).get("redirectInfo", {})
        )
        logger.info("phonepe_payment_initiated", merchant_transaction_id=merchant_transaction_id)
        return PaymentInitiationResult(
            gateway_ref_id=merchant_transaction_id,
            action="REDIRECT",
            redirect_url=redirect_info.get("url"),
            client_payload={"redirectUrl": redirect_info.get("url")},
            raw_request=raw_request,
            raw_response=data,
        )

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookVerification:
        received = headers.get("x-verify")
        if not received:
            return WebhookVerification(False, self.name, error="Missing X-VERIFY header")

        expected = sha256_checksum(body, self.config.salt_key, self.config.salt_index)
        if not verify_signature(expected, received):
            return WebhookVerification(False, self.name, error="Checksum mismatch")

        try:
            parsed = json.loads(body)
            if isinstance(parsed, dict) and "response" in parsed:
                data = decode_payload(parsed["response"])
            else:
                data = parsed
        except (ValueError, TypeError) as exc:
            return WebhookVerification(False, self.name, error=f"Malformed payload: {exc}")
        if not isinstance(data, dict):
            return WebhookVerification(False, self.name, error="Malformed payload: expected a JSON object")

        code = data.get("code", "")
        detail = data.get("data")
        success: Optional[bool] = None
        if code == "PAYMENT_SUCCESS":
            success = True
        elif code == "PAYMENT_ERROR":
            success = False

        return WebhookVerification(
            is_valid=True,
            provider=self.name,
            event=code,
            reference=detail.get("merchantTransactionId") if isinstance(detail, dict) else None,
            success=success,
            payload=data,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        refund_txn_id = f"REFUND_{request.gateway_ref_id}_{int(time.time())}"[:38]
        payload = {
            "merchantId": self.config.merchant_id,
            "merchantUserId": self.config.merchant_id,
            "originalTransactionId": request.gateway_ref_id,
            "merchantTransactionId": refund_txn_id,
            "amount": to_minor_units(request.amount),
        }
        _, data = await self._post(REFUND_ENDPOINT, payload)
        if not data.get("success"):
            raise GatewayRejected(
                data.get("message") or "PhonePe refund failed",
                provider=self.name,
                details={"code": data.get("code")},
            )
        logger.info("phonepe_refund_initiated", refund_transaction_id=refund_txn_id)
        return RefundResult(
            gateway_refund_id=(data.get("data") or {}).get("merchantTransactionId", refund_txn_id),
            raw_response=data,
        )

    async def get_payment_status(self, gateway_ref_id: str) -> PaymentStatusResult:
        endpoint = STATUS_ENDPOINT.format(merchant_id=self.config.merchant_id, transaction_id=gateway_ref_id)
        response = await self.request(
            AdapterRequest(
                method="GET",
                path=endpoint,
                headers={
                    "Content-Type": "application/json",
                    "X-VERIFY": self._checksum("", endpoint),
                    "X-MERCHANT-ID": self.config.merchant_id,
                },
            )
        )
        data = response.data if isinstance(response.data, dict) else {}
        code = data.get("code", "")
        if data.get("success") and code == "PAYMENT_SUCCESS":
            state = ProviderPaymentState.SUCCESS
        elif code == "PAYMENT_PENDING" or (data.get("success") and code != "PAYMENT_ERROR"):
            state = ProviderPaymentState.PENDING
        else:
            state = ProviderPaymentState.FAILED
        logger.info("phonepe_status_checked", merchant_transaction_id=gateway_ref_id, code=code, state=state.value)
        return PaymentStatusResult(gateway_ref_id=gateway_ref_id, state=state, raw_response=data)

    def health(self) -> Optional[dict[str, Any]]:
        return self.get_health().to_dict()
