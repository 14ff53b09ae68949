"""
Bookstore Outbound Adapter Framework.

Every external HTTP integration (payment gateways today) inherits from
AdapterBase. Provides:
- Auth headers (Basic, custom header sets)
- Standardized request/response envelope
- Translation of httpx failures into the gateway error taxonomy
- Health tracking (latency, errors)

Retries and circuit breaking are NOT done here: callers compose
``CircuitBreaker.execute(lambda: RetryPolicy.run(adapter_call))`` so a
single adapter request is exactly one HTTP round trip.
"""
from __future__ import annotations
from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import base64
import time

import httpx
import structlog

from core.errors import GatewayRejected, GatewayTimeoutError, GatewayTransientError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    CUSTOM = "custom"


# ---------------------------------------------------------------------------
# Request / Response envelope
# ---------------------------------------------------------------------------

@dataclass
class AdapterRequest:
    """Standardized outbound request."""
    method: str  # GET, POST
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None


@dataclass
class AdapterResponse:
    """Standardized inbound response."""
    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0
    adapter_name: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


# ---------------------------------------------------------------------------
# Health tracking
# ---------------------------------------------------------------------------

@dataclass
class IntegrationHealth:
    """Health metrics for an adapter."""
    adapter_name: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    def record(self, latency_ms: float, success: bool, error: str | None = None) -> None:
        self.total_requests += 1
        self.avg_latency_ms += (latency_ms - self.avg_latency_ms) / self.total_requests
        now = datetime.now(timezone.utc)
        if success:
            self.successful_requests += 1
            self.last_success = now
        else:
            self.failed_requests += 1
            self.last_failure = now
            self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "adapter_name": self.adapter_name,
            "total_requests": self.total_requests,
            "successful": self.successful_requests,
            "failed": self.failed_requests,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# AdapterBase
# ---------------------------------------------------------------------------

class AdapterBase(ABC):
    """
    Base class for outbound HTTP adapters.

    Subclasses must set:
        name: str           — adapter identifier
        base_url: str       — API root URL
        auth_type: AuthType — authentication method
    """

    name: str = ""
    base_url: str = ""
    auth_type: AuthType = AuthType.NONE

    def __init__(
        self,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._transport = transport
        self._health = IntegrationHealth(adapter_name=self.name)
        self._username: str | None = None
        self._password: str | None = None

    # --- Auth headers ---

    def set_basic_auth(self, username: str, password: str) -> None:
        self.auth_type = AuthType.BASIC
        self._username = username
        self._password = password

    def get_auth_headers(self) -> dict[str, str]:
        if self.auth_type == AuthType.BASIC and self._username and self._password:
            encoded = base64.b64encode(f"{self._username}:{self._password}".encode()).decode()
            return {"Authorization": f"Basic {encoded}"}
        return {}

    def get_health(self) -> IntegrationHealth:
        return self._health

    # --- Core request ---

    async def request(self, req: AdapterRequest) -> AdapterResponse:
        """
        Execute one HTTP round trip.

        Raises GatewayTimeoutError / GatewayTransientError for timeouts,
        connection errors and 5xx; GatewayRejected for 4xx.
        """
        url = f"{self.base_url.rstrip('/')}/{req.path.lstrip('/')}"
        headers = {**self.get_auth_headers(), **req.headers}

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.request(
                    method=req.method,
                    url=url,
                    params=req.params or None,
                    json=req.body,
                    headers=headers,
                    timeout=req.timeout or self.timeout,
                )
        except httpx.TimeoutException as exc:
            self._health.record((time.monotonic() - start) * 1000, False, str(exc))
            raise GatewayTimeoutError(f"{self.name} request timed out", provider=self.name) from exc
        except httpx.TransportError as exc:
            self._health.record((time.monotonic() - start) * 1000, False, str(exc))
            raise GatewayTransientError(
                f"{self.name} unreachable: {exc}", provider=self.name
            ) from exc

        latency = (time.monotonic() - start) * 1000
        data = _decode(resp)

        if resp.status_code >= 500:
            self._health.record(latency, False, f"HTTP {resp.status_code}")
            logger.warning("adapter_server_error", adapter=self.name, path=req.path, status=resp.status_code)
            raise GatewayTransientError(
                f"{self.name} returned HTTP {resp.status_code}",
                provider=self.name,
                status=resp.status_code,
            )
        if resp.status_code >= 400:
            self._health.record(latency, False, f"HTTP {resp.status_code}")
            logger.warning("adapter_request_rejected", adapter=self.name, path=req.path, status=resp.status_code)
            raise GatewayRejected(
                f"{self.name} rejected the request with HTTP {resp.status_code}",
                provider=self.name,
                status=resp.status_code,
                details={"response": data} if isinstance(data, dict) else None,
            )

        self._health.record(latency, True)
        return AdapterResponse(
            status_code=resp.status_code,
            data=data,
            headers=dict(resp.headers),
            latency_ms=latency,
            adapter_name=self.name,
        )


def _decode(resp: httpx.Response) -> Any:
    if resp.headers.get("content-type", "").startswith("application/json"):
        return resp.json()
    return resp.text
