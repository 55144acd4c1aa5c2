"""
Subscription Schemas
====================

Pydantic schemas for the subscription pipeline: the canonical event
produced from store notifications, the immutable snapshot the state
machine works on, and the request/response bodies of the client
endpoints.
"""

from datetime import datetime
from typing import Any, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models.subscription import (
    EventKind,
    EventOutcome,
    Platform,
    Provider,
    SubscriptionPlan,
    SubscriptionStatus,
)


# ─── Canonical Event ─────────────────────────────────────────────────────────


class SubscriptionEvent(BaseModel):
    """
    Provider-agnostic subscription event.

    ``platform`` is the channel the event came from: a store provider
    for webhooks, or whatever the client declared for receipt
    validation (which may be ``web``).
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    platform: Platform
    original_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    occurred_at: datetime
    notification_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_trial: bool = False
    app_user_id: Optional[str] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def provider(self) -> Optional[Provider]:
        """Store provider, or None for direct web purchases."""
        if self.platform == Platform.WEB:
            return None
        return Provider(self.platform.value)


# ─── Subscription Snapshot ───────────────────────────────────────────────────


ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


class SubscriptionSnapshot(BaseModel):
    """Immutable copy of a user's subscription record."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: SubscriptionPlan = SubscriptionPlan.NONE
    status: SubscriptionStatus = SubscriptionStatus.NONE
    platform: Optional[Platform] = None
    product_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    latest_transaction_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    auto_renew: bool = False
    refunded: bool = False
    refund_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: Optional[int] = None

    @classmethod
    def empty(cls, user_id: str) -> "SubscriptionSnapshot":
        """State of a user that has never purchased anything."""
        return cls(user_id=user_id)

    @property
    def exists(self) -> bool:
        return self.status != SubscriptionStatus.NONE

    def semantic_state(self) -> dict[str, Any]:
        """Fields that define entitlement, without bookkeeping."""
        return self.model_dump(exclude={"updated_at", "version", "last_event_at"})

    def is_active_at(self, now: datetime) -> bool:
        """Derived at read time; never stored."""
        if self.refunded or self.status not in ACTIVE_STATUSES:
            return False
        if self.plan == SubscriptionPlan.LIFETIME:
            return True
        return self.expiry_date is not None and self.expiry_date > now

    def to_status_view(self, now: datetime) -> "SubscriptionStatusView":
        is_lifetime = self.plan == SubscriptionPlan.LIFETIME and not self.refunded
        return SubscriptionStatusView(
            is_active=self.is_active_at(now),
            plan=None if self.plan == SubscriptionPlan.NONE else self.plan,
            expiry_date=None if is_lifetime else self.expiry_date,
            is_lifetime=is_lifetime,
            is_trial_active=(
                self.status == SubscriptionStatus.TRIAL
                and self.trial_end_date is not None
                and self.trial_end_date > now
            ),
            trial_end_date=self.trial_end_date,
            status=self.status,
        )


# ─── Response Views ──────────────────────────────────────────────────────────


class CamelModel(BaseModel):
    """Serialised with camelCase keys for the mobile client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionStatusView(CamelModel):
    """Entitlement view returned to the client."""

    is_active: bool
    plan: Optional[SubscriptionPlan] = None
    expiry_date: Optional[datetime] = None
    is_lifetime: bool = False
    is_trial_active: bool = False
    trial_end_date: Optional[datetime] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE


class SubscriptionEventView(CamelModel):
    """Audit record as exposed on the history endpoint."""

    id: uuid.UUID
    event_kind: EventKind
    outcome: EventOutcome
    provider: Optional[Platform] = None
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime


# ─── Request / Response Schemas ──────────────────────────────────────────────


_PLATFORM_ALIASES = {
    "ios": Platform.STORE_A.value,
    "android": Platform.STORE_B.value,
}


class ValidateReceiptRequest(CamelModel):
    """Request schema for client receipt validation."""

    receipt: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    platform: Platform

    @field_validator("platform", mode="before")
    @classmethod
    def normalize_platform(cls, v: Any) -> Any:
        """Accept the mobile OS names the apps send."""
        if isinstance(v, str):
            return _PLATFORM_ALIASES.get(v.lower(), v)
        return v


class SubscriptionStatusResponse(BaseModel):
    """Response schema for subscription status."""

    success: bool = True
    data: SubscriptionStatusView


class SubscriptionEventsResponse(BaseModel):
    """Response schema for the audit history."""

    success: bool = True
    data: list[SubscriptionEventView]
