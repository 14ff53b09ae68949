"""Bookstore API — FastAPI entry point.

Registers middleware, routers, error handling and lifecycle hooks. The
bookstore vertical is mounted under /api/bookstore/.
"""

import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.middleware import RequestIdMiddleware
from core.database import async_session_factory, close_db, engine, init_db
from core.errors import CircuitOpenError, CommerceError
from core.logging_config import configure_logging

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")
CREATE_TABLES = os.getenv("DB_CREATE_TABLES", "false").lower() == "true"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown hooks."""
    from verticals.bookstore.config import config
    from verticals.bookstore.services import build_services

    configure_logging()
    if CREATE_TABLES:
        await init_db(engine)

    services = build_services(config, async_session_factory)
    app.state.services = services
    if config.maintenance_enabled:
        services.maintenance.start()

    logger.info("api_started", providers=sorted(services.registry.snapshot()))
    yield

    await services.maintenance.stop()
    await services.checkout.drain()
    await close_db(engine)
    logger.info("api_stopped")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Bookstore Commerce",
    description="Cart, checkout and payment pipeline for the bookstore",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "Idempotency-Key", "Idempotent-Replayed"],
)

# Request id + log context
app.add_middleware(RequestIdMiddleware)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        error=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        path=request.url.path,
    )
    headers = {}
    if isinstance(exc, CircuitOpenError):
        headers["Retry-After"] = str(max(int(exc.retry_after), 1))
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


# ---------------------------------------------------------------------------
# Routers — verticals register here
# ---------------------------------------------------------------------------

from verticals.bookstore.router import router as bookstore_router  # noqa: E402

app.include_router(bookstore_router, prefix="/api/bookstore", tags=["Bookstore"])


# ---------------------------------------------------------------------------
# Health & root
# ---------------------------------------------------------------------------

@app.get("/health")
async def health(request: Request):
    services = getattr(request.app.state, "services", None)
    providers = services.registry.snapshot() if services is not None else {}
    degraded = any(p["breaker"]["state"] != "closed" for p in providers.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "version": "0.1.0",
        "providers": providers,
    }


@app.get("/")
async def root():
    return {
        "name": "Bookstore Commerce",
        "version": "0.1.0",
        "docs": "/docs",
        "verticals": ["bookstore"],
    }


def run() -> None:
    """Serve the API with uvicorn; HOST, PORT and RELOAD come from the environment."""
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("api_starting", host=host, port=port)
    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=os.getenv("RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
