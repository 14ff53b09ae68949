"""
Bookstore Core Integrations — Outbound Adapters and Inbound Webhooks.

Provides vendor-agnostic integration infrastructure:
- AdapterBase: HTTP adapter with auth, health tracking and error translation
- Webhook verification: HMAC / salted checksum signatures, constant-time compare
"""
from core.integrations.adapter_base import (
    AdapterBase,
    AdapterRequest,
    AdapterResponse,
    AuthType,
    IntegrationHealth,
)
from core.integrations.webhooks import (
    WebhookVerification,
    sha256_checksum,
    sign_hmac_sha256,
    verify_signature,
)

__all__ = [
    # Adapter
    "AdapterBase",
    "AdapterRequest",
    "AdapterResponse",
    "AuthType",
    "IntegrationHealth",
    # Webhooks
    "WebhookVerification",
    "sha256_checksum",
    "sign_hmac_sha256",
    "verify_signature",
]
