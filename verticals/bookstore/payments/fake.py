"""Configurable fake payment provider for development and testing.

Simulates a real provider without any external calls. It can be configured
at runtime to succeed, reject, fail transiently a number of times or hang,
which covers the retry, circuit breaker and failure paths of checkout.

Webhooks are signed with HMAC-SHA256 over the raw body in
``x-fake-signature``; :meth:`FakeProvider.build_webhook` produces a signed
callback for a given reference.
"""

import asyncio
import json
from typing import Any, Mapping, Optional
from uuid import uuid4

from core.errors import GatewayRejected, GatewayTransientError
from core.integrations.webhooks import WebhookVerification, sign_hmac_sha256, verify_signature
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

SIGNATURE_HEADER = "x-fake-signature"


class FakeProvider(PaymentProvider):
    """Configurable fake payment provider."""

    def __init__(self, name: str = "fake", webhook_secret: str = "fake-webhook-secret") -> None:
        self.name = name
        self.webhook_secret = webhook_secret
        self.should_succeed: bool = True
        self.failure_reason: str = "Payment declined"
        self.transient_failures: int = 0
        self.delay_seconds: float = 0.0
        self.calls: list[dict[str, Any]] = []
        self.payment_states: dict[str, ProviderPaymentState] = {}

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Payment declined",
        transient_failures: int = 0,
        delay_seconds: float = 0.0,
    ) -> None:
        """Configure provider behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.transient_failures = transient_failures
        self.delay_seconds = delay_seconds

    async def _simulate(self) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise GatewayTransientError(f"{self.name} temporarily unavailable", provider=self.name, status=503)
        if not self.should_succeed:
            raise GatewayRejected(self.failure_reason, provider=self.name, status=400)

    async def initiate(self, request: PaymentInitiation) -> PaymentInitiationResult:
        call = {
            "method": "initiate",
            "transaction_id": request.transaction_id,
            "order_id": request.order_id,
            "amount": str(request.amount),
            "currency": request.currency,
            "idempotency_key": request.idempotency_key,
        }
        self.calls.append(call)
        await self._simulate()

        ref = f"fake_order_{uuid4().hex[:12]}"
        redirect = f"{request.redirect_url}&ref={ref}"
        return PaymentInitiationResult(
            gateway_ref_id=ref,
            action="REDIRECT",
            redirect_url=redirect,
            client_payload={"redirectUrl": redirect},
            raw_request={**call, "amountMinor": to_minor_units(request.amount)},
            raw_response={"id": ref, "status": "created"},
        )

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookVerification:
        received = headers.get(SIGNATURE_HEADER)
        if not verify_signature(sign_hmac_sha256(body, self.webhook_secret), received):
            return WebhookVerification(False, self.name, error="Invalid signature")
        try:
            payload = json.loads(body)
        except ValueError as exc:
            return WebhookVerification(False, self.name, error=f"Malformed payload: {exc}")
        if not isinstance(payload, dict):
            return WebhookVerification(False, self.name, error="Malformed payload: expected a JSON object")

        event = payload.get("event", "")
        success: Optional[bool] = None
        if event == "payment.success":
            success = True
        elif event == "payment.failed":
            success = False
        return WebhookVerification(
            is_valid=True,
            provider=self.name,
            event=event,
            reference=payload.get("reference"),
            success=success,
            payload=payload,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        self.calls.append(
            {
                "method": "refund",
                "refund_id": request.refund_id,
                "gateway_ref_id": request.gateway_ref_id,
                "amount": str(request.amount),
                "reason": request.reason,
            }
        )
        await self._simulate()
        refund_ref = f"fake_refund_{uuid4().hex[:12]}"
        return RefundResult(gateway_refund_id=refund_ref, raw_response={"id": refund_ref, "status": "processed"})

    async def get_payment_status(self, gateway_ref_id: str) -> PaymentStatusResult:
        self.calls.append({"method": "status", "gateway_ref_id": gateway_ref_id})
        await self._simulate()
        state = self.payment_states.get(gateway_ref_id, ProviderPaymentState.PENDING)
        return PaymentStatusResult(
            gateway_ref_id=gateway_ref_id, state=state, raw_response={"id": gateway_ref_id, "state": state.value}
        )

    def build_webhook(self, reference: str, success: bool = True) -> tuple[dict[str, str], bytes]:
        """Signed webhook headers and raw body for ``reference``."""
        body = json.dumps(
            {"event": "payment.success" if success else "payment.failed", "reference": reference}
        ).encode()
        return {SIGNATURE_HEADER: sign_hmac_sha256(body, self.webhook_secret)}, body

    def calls_for(self, method: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method]
