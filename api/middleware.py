"""Request context middleware.

Every request gets a request id (taken from ``X-Request-Id`` or generated),
bound into the structlog context so all log lines of the request carry it,
and echoed back in the response header.

Caller identity is never read from ambient state by business code: route
handlers depend on :func:`get_request_context` and pass the explicit
values down.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.logging_config import bind_request_context, clear_request_context

REQUEST_ID_HEADER = "X-Request-Id"


@dataclass(frozen=True)
class RequestContext:
    """Explicit per-request values handed to the service layer."""

    request_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    idempotency_key: Optional[str] = None


def get_request_context(request: Request) -> RequestContext:
    """FastAPI dependency: caller identity and request metadata from headers.

    ``X-User-Id`` is set by the upstream auth layer for signed-in users;
    guests are identified by ``X-Session-Id``.
    """
    return RequestContext(
        request_id=getattr(request.state, "request_id", None) or uuid4().hex,
        user_id=request.headers.get("X-User-Id") or None,
        session_id=request.headers.get("X-Session-Id") or None,
        idempotency_key=request.headers.get("Idempotency-Key") or None,
    )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assign a request id and bind it for log correlation."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id

        clear_request_context()
        bind_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_request_context()
