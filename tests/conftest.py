"""
Test Fixtures
=============

Shared fixtures: an in-memory SQLite database per test, a
reconciliation service bound to it, and an HTTP client for the app
with service dependencies overridden.
"""

import hashlib
import hmac
import json
import os

# Settings are read on import; configure before anything imports app.config
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = ""
os.environ["JWT_SECRET"] = "test-jwt-secret-with-at-least-32-characters"
os.environ["STORE_A_WEBHOOK_SECRET"] = "store-a-test-secret"
os.environ["STORE_B_WEBHOOK_SECRET"] = "store-b-test-secret"
os.environ["SUBSCRIPTION_CACHE_ENABLED"] = "false"
os.environ["WEBHOOK_QUEUE_ENABLED"] = "false"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.plans import PlanCatalog
from app.core.security import create_access_token
from app.core.signatures import SignatureVerifier
from app.db.base import Base
from app.models.subscription import Provider
from app.services.reconciliation import ReconciliationService

STORE_A_SECRET = "store-a-test-secret"
STORE_B_SECRET = "store-b-test-secret"


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def catalog():
    return PlanCatalog(
        monthly_id="monthly_subscription",
        yearly_id="yearly_subscription",
        lifetime_id="lifetime_subscription",
        trial_period_days=7,
    )


@pytest.fixture
def service(session_factory, catalog):
    return ReconciliationService(
        session_factory=session_factory,
        catalog=catalog,
        max_retries=2,
        base_delay=0,
        timeout=5,
    )


@pytest.fixture
def verifier():
    return SignatureVerifier({
        Provider.STORE_A: STORE_A_SECRET,
        Provider.STORE_B: STORE_B_SECRET,
    })


@pytest_asyncio.fixture
async def client(service, verifier):
    """HTTP client for the app with services bound to the test database."""
    from app.dependencies import (
        get_event_queue,
        get_reconciliation_service,
        get_signature_verifier,
    )
    from app.main import app

    app.dependency_overrides[get_reconciliation_service] = lambda: service
    app.dependency_overrides[get_signature_verifier] = lambda: verifier
    app.dependency_overrides[get_event_queue] = lambda: None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# =============================================================================
# Helpers
# =============================================================================

@pytest.fixture
def sign_store_a():
    """Return ``(body_bytes, signature)`` for a store A payload."""

    def _sign(payload: dict, secret: str = STORE_A_SECRET):
        body = json.dumps(payload).encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return body, f"sha256={digest}"

    return _sign


@pytest.fixture
def sign_store_b():
    """Return ``(body_bytes, token)`` for a store B payload."""

    def _sign(payload: dict, secret: str = STORE_B_SECRET):
        body = json.dumps(payload).encode("utf-8")
        token = jwt.encode(payload, secret, algorithm="HS256")
        return body, token

    return _sign


@pytest.fixture
def auth_headers():
    """Bearer headers for a user id."""

    def _headers(user_id: str = "user-1") -> dict:
        token = create_access_token({"sub": user_id})
        return {"Authorization": f"Bearer {token}"}

    return _headers
