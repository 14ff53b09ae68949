"""
Bookstore Webhook Verification — Inbound Event Authentication.

Payment providers sign their callbacks; we recompute the signature over the
raw request body and compare in constant time. Helpers:
- sign_hmac_sha256: HMAC-SHA256 hex digest (Razorpay style)
- sha256_checksum: salted SHA-256 checksum with key index (PhonePe style)
- verify_signature: constant-time comparison
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Optional
import hashlib
import hmac


@dataclass
class WebhookVerification:
    """Outcome of verifying and decoding an inbound provider callback."""
    is_valid: bool
    provider: str
    event: str = ""
    reference: Optional[str] = None  # provider order id / merchant transaction id
    success: Optional[bool] = None
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "provider": self.provider,
            "event": self.event,
            "reference": self.reference,
            "success": self.success,
            "error": self.error,
        }


def sign_hmac_sha256(payload: bytes | str, secret: str) -> str:
    """HMAC-SHA256 signature of a payload."""
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def sha256_checksum(payload: bytes | str, salt_key: str, salt_index: str) -> str:
    """``sha256(payload + salt_key) + "###" + salt_index``."""
    if isinstance(payload, str):
        payload = payload.encode()
    digest = hashlib.sha256(payload + salt_key.encode()).hexdigest()
    return f"{digest}###{salt_index}"


def verify_signature(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode(), received.strip().encode())
