"""Razorpay payment provider.

Uses the REST orders API with HTTP Basic auth (key id / key secret). The
Razorpay order id is the gateway reference; the client completes payment in
Razorpay's checkout modal. Webhooks are signed with
``HMAC-SHA256(raw_body, webhook_secret)`` in ``x-razorpay-signature``.
"""

import json
from typing import Any, Mapping, Optional

import httpx
import structlog

from core.errors import GatewayRejected
from core.integrations.adapter_base import AdapterBase, AdapterRequest
from core.integrations.webhooks import WebhookVerification, sign_hmac_sha256, verify_signature
from patterns.domain_config import RazorpayConfig
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

SUCCESS_EVENTS = {"payment.captured", "order.paid"}
FAILURE_EVENTS = {"payment.failed"}


class RazorpayProvider(AdapterBase, PaymentProvider):
    name = "razorpay"

    def __init__(
        self,
        config: RazorpayConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.config = config
        self.base_url = config.base_url
        if config.key_id and config.key_secret:
            self.set_basic_auth(config.key_id, config.key_secret)
        else:
            logger.warning("razorpay_credentials_missing")

    async def initiate(self, request: PaymentInitiation) -> PaymentInitiationResult:
        body = {
            "amount": to_minor_units(request.amount),
            "currency": request.currency,
            "receipt": request.order_id[:40],
            "notes": {
                "orderId": request.order_id,
                "transactionId": request.transaction_id,
            },
        }
        response = await self.request(
            AdapterRequest(
                method="POST",
                path="/orders",
                body=body,
                headers={"Content-Type": "application/json"},
            )
        )
        data = response.data if isinstance(response.data, dict) else {}
        order_id = data.get("id")
        if not order_id:
            raise GatewayRejected("Razorpay did not return an order id", provider=self.name)

        logger.info("razorpay_order_created", razorpay_order_id=order_id)
        return PaymentInitiationResult(
            gateway_ref_id=order_id,
            action="MODAL",
            client_payload={
                "razorpayOrderId": order_id,
                "keyId": self.config.key_id,
                "amount": body["amount"],
                "currency": request.currency,
            },
            raw_request={"path": "/orders", "body": body},
            raw_response=data,
        )

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookVerification:
        received = headers.get("x-razorpay-signature")
        if not received:
            return WebhookVerification(False, self.name, error="Missing signature")

        expected = sign_hmac_sha256(body, self.config.webhook_secret)
        if not verify_signature(expected, received):
            return WebhookVerification(False, self.name, error="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError as exc:
            return WebhookVerification(False, self.name, error=f"Malformed payload: {exc}")
        if not isinstance(payload, dict):
            return WebhookVerification(False, self.name, error="Malformed payload: expected a JSON object")

        event = payload.get("event", "")
        if event not in SUCCESS_EVENTS and event not in FAILURE_EVENTS:
            return WebhookVerification(True, self.name, event=event, payload=payload)

        entity = payload.get("payload") or {}
        for part in ("payment", "entity"):
            entity = entity.get(part) if isinstance(entity, dict) else None
        if not isinstance(entity, dict):
            entity = {}
        return WebhookVerification(
            is_valid=True,
            provider=self.name,
            event=event,
            reference=entity.get("order_id"),
            success=event in SUCCESS_EVENTS,
            payload=payload,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        payments = await self.request(
            AdapterRequest(method="GET", path=f"/orders/{request.gateway_ref_id}/payments")
        )
        items = (payments.data or {}).get("items", []) if isinstance(payments.data, dict) else []
        captured = next((p for p in items if p.get("status") == "captured"), None)
        if captured is None:
            raise GatewayRejected(
                "No captured payment found for this order",
                provider=self.name,
                details={"razorpayOrderId": request.gateway_ref_id},
            )

        response = await self.request(
            AdapterRequest(
                method="POST",
                path=f"/payments/{captured['id']}/refund",
                body={
                    "amount": to_minor_units(request.amount),
                    "notes": {
                        "reason": request.reason,
                        "merchant_order_id": request.gateway_ref_id,
                        "refund_id": request.refund_id,
                    },
                },
                headers={"Content-Type": "application/json"},
            )
        )
        data = response.data if isinstance(response.data, dict) else {}
        logger.info("razorpay_refund_initiated", refund_id=data.get("id"), payment_id=captured["id"])
        return RefundResult(gateway_refund_id=data.get("id", ""), raw_response=data)

    async def get_payment_status(self, gateway_ref_id: str) -> PaymentStatusResult:
        """Derive the order state from its payments: any capture wins, all failed is a failure."""
        response = await self.request(AdapterRequest(method="GET", path=f"/orders/{gateway_ref_id}/payments"))
        data = response.data if isinstance(response.data, dict) else {}
        statuses = {p.get("status") for p in data.get("items", []) if isinstance(p, dict)}
        if "captured" in statuses:
            state = ProviderPaymentState.SUCCESS
        elif statuses and statuses <= {"failed"}:
            state = ProviderPaymentState.FAILED
        else:
            state = ProviderPaymentState.PENDING
        logger.info("razorpay_status_checked", razorpay_order_id=gateway_ref_id, state=state.value)
        return PaymentStatusResult(gateway_ref_id=gateway_ref_id, state=state, raw_response=data)

    def health(self) -> Optional[dict[str, Any]]:
        return self.get_health().to_dict()
