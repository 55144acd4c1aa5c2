"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import ErrorDetail, ErrorResponse, WebhookAck
from app.schemas.subscription import (
    SubscriptionEvent,
    SubscriptionEventView,
    SubscriptionSnapshot,
    SubscriptionStatusResponse,
    SubscriptionStatusView,
    ValidateReceiptRequest,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "SubscriptionEvent",
    "SubscriptionEventView",
    "SubscriptionSnapshot",
    "SubscriptionStatusResponse",
    "SubscriptionStatusView",
    "ValidateReceiptRequest",
    "WebhookAck",
]
