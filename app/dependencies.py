"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.core.security import decode_token
from app.core.signatures import SignatureVerifier
from app.services.reconciliation import ReconciliationService
from app.services.webhook_queue import SubscriptionEventQueue

logger = logging.getLogger(__name__)

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

# Development test user ID
DEV_USER_ID = "00000000-0000-0000-0000-000000000001"


# =============================================================================
# Service wiring
# =============================================================================

@lru_cache
def get_reconciliation_service() -> ReconciliationService:
    """Process-wide reconciliation service (database resolved lazily)."""
    return ReconciliationService()


@lru_cache
def get_signature_verifier() -> SignatureVerifier:
    """Verifier holding the webhook secrets resolved once at startup."""
    return SignatureVerifier(settings.webhook_secrets)


def get_event_queue() -> Optional[SubscriptionEventQueue]:
    """Webhook stream producer, or None when events are applied inline."""
    if not settings.WEBHOOK_QUEUE_ENABLED:
        return None
    return SubscriptionEventQueue()


Reconciliation = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
Verifier = Annotated[SignatureVerifier, Depends(get_signature_verifier)]
EventQueue = Annotated[Optional[SubscriptionEventQueue], Depends(get_event_queue)]


# =============================================================================
# User resolution
# =============================================================================

def _user_id_from_token(credentials: HTTPAuthorizationCredentials) -> Optional[str]:
    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    return str(user_id)


async def get_current_user_id(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """
    Get the authenticated caller's user id.

    Raises 401 if not authenticated or token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user id.
    """
    if settings.auth_disabled:
        request.state.user_id = DEV_USER_ID
        return DEV_USER_ID

    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_TOKEN_EXPIRED,
            message="Not authenticated",
        )

    user_id = _user_id_from_token(credentials)
    if user_id is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
        )

    # Picked up by NewRelicTransactionMiddleware
    request.state.user_id = user_id
    return user_id


# Type alias for authenticated user dependency
CurrentUserId = Annotated[str, Depends(get_current_user_id)]
