"""
Subscription API - Main Application
===================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db
from app.dependencies import get_reconciliation_service
from app.schemas.common import ErrorResponse
from app.services.cache import close_redis, init_redis
from app.services.webhook_queue import WebhookEventWorker

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering, alerting and dashboarding.

    Raw ASGI instead of BaseHTTPMiddleware keeps the handler in the same
    task, so New Relic's contextvars-based span propagation still sees
    the database and Redis spans.

    Captures: response status, latency, HTTP method, route pattern, and
    user ID (when authenticated).
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                client = scope.get("client")
                client_ip = client[0] if client else "unknown"

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("http.client_ip", client_ip),
                    ("environment", settings.ENVIRONMENT),
                ])

                state = scope.get("state")
                user_id = state.get("user_id") if isinstance(state, dict) else None
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


_webhook_worker: Optional[WebhookEventWorker] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection
    - Webhook event worker (when the Redis stream queue is enabled)
    """
    global _webhook_worker

    logger.info("Starting Subscription API...")

    if settings.auth_disabled:
        logger.warning(
            "Authentication is DISABLED (DEV_AUTH_DISABLED=true); "
            "all requests use the development user. Never use this in production."
        )

    # Continue startup even if a backend is down (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed: %s", e)

    if settings.WEBHOOK_QUEUE_ENABLED:
        _webhook_worker = WebhookEventWorker(get_reconciliation_service())
        await _webhook_worker.start()

    yield

    logger.info("Shutting down Subscription API...")
    if _webhook_worker is not None:
        await _webhook_worker.stop()
        _webhook_worker = None
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Subscription API",
    description="""
## Subscription Reconciliation Backend

Keeps one subscription record per user consistent across two
independent writers.

### Features
- **Store webhooks**: Signed notifications from store A and store B,
  applied idempotently and audited
- **Receipt validation**: Client-submitted purchases
- **Status**: Entitlement derived at read time
- **History**: Per-user audit trail of subscription events
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Validation error"},
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
        503: {"model": ErrorResponse, "description": "Storage unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Subscription API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/subscription", tags=["Webhooks"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.is_development,
    )
