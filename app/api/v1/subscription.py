"""
Subscription API Endpoints
==========================

Client-facing subscription endpoints: receipt validation, status,
sync and the caller's audit history.

Unlike the webhook ingress these return ordinary HTTP errors
(400 invalid input, 401 unauthenticated, 503 storage failure).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query

from app.dependencies import CurrentUserId, Reconciliation
from app.models.subscription import EventKind
from app.schemas.subscription import (
    SubscriptionEventsResponse,
    SubscriptionStatusResponse,
    ValidateReceiptRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/validate",
    response_model=SubscriptionStatusResponse,
)
async def validate_receipt(
    request: ValidateReceiptRequest,
    user_id: CurrentUserId,
    service: Reconciliation,
):
    """
    Validate a purchase receipt and apply it to the caller's subscription.

    Returns the resulting subscription status.
    """
    logger.info(
        "Receipt validation: user=%s product=%s platform=%s",
        user_id,
        request.product_id,
        request.platform.value,
    )
    view = await service.reconcile_from_receipt(
        user_id,
        request.receipt,
        request.product_id,
        request.platform,
    )
    return SubscriptionStatusResponse(success=True, data=view)


@router.get(
    "/status",
    response_model=SubscriptionStatusResponse,
)
async def get_subscription_status(
    user_id: CurrentUserId,
    service: Reconciliation,
):
    """Get the caller's current subscription status."""
    view = await service.get_status(user_id)
    return SubscriptionStatusResponse(success=True, data=view)


@router.post(
    "/sync",
    response_model=SubscriptionStatusResponse,
)
async def sync_subscription(
    user_id: CurrentUserId,
    service: Reconciliation,
):
    """
    Re-read the caller's subscription from the database.

    Bypasses and refreshes the status cache.
    """
    view = await service.sync_status(user_id)
    return SubscriptionStatusResponse(success=True, data=view)


@router.get(
    "/events",
    response_model=SubscriptionEventsResponse,
)
async def list_subscription_events(
    user_id: CurrentUserId,
    service: Reconciliation,
    event_kind: Optional[EventKind] = Query(default=None),
):
    """Audit history of the caller's subscription events, newest first."""
    events = await service.list_events(user_id, event_kind)
    return SubscriptionEventsResponse(success=True, data=events)
