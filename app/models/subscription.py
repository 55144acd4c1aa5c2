"""
Subscription Models
===================

SQLAlchemy models for the per-user subscription record and its
append-only audit trail of store notifications.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class SubscriptionPlan(str, Enum):
    """Subscription plan cadence."""
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"
    NONE = "none"


class SubscriptionStatus(str, Enum):
    """Subscription status values. NONE is never persisted."""
    NONE = "none"
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class Platform(str, Enum):
    """Channel that last authoritatively wrote a subscription."""
    STORE_A = "storeA"
    STORE_B = "storeB"
    WEB = "web"


class Provider(str, Enum):
    """Store platforms that deliver webhook notifications."""
    STORE_A = "storeA"
    STORE_B = "storeB"

    @property
    def platform(self) -> Platform:
        return Platform(self.value)


class EventKind(str, Enum):
    """Canonical subscription event kinds."""
    PURCHASED = "purchased"
    RENEWED = "renewed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


class EventOutcome(str, Enum):
    """What happened to an event once it reached reconciliation."""
    APPLIED = "applied"
    REJECTED = "rejected"
    IGNORED = "ignored"


class Subscription(Base, TimestampMixin):
    """
    One row per user.

    ``version`` is the optimistic concurrency token: every UPDATE is
    issued as ``... WHERE version = :expected`` and fails with
    ``StaleDataError`` when another writer got there first.
    """

    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )

    plan: Mapped[SubscriptionPlan] = mapped_column(
        SQLEnum(SubscriptionPlan),
        default=SubscriptionPlan.NONE,
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.PENDING,
        nullable=False,
    )
    platform: Mapped[Optional[Platform]] = mapped_column(
        SQLEnum(Platform),
        nullable=True,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Lineage
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    latest_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    expiry_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # Null for lifetime plans
    )
    trial_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    auto_renew: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    refunded: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    refund_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_subscription_status_expiry", "status", "expiry_date"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(user_id={self.user_id}, plan={self.plan}, status={self.status})>"


class SubscriptionEventRecord(Base):
    """
    Audit trail entry.

    Written for every authenticated notification that reaches
    reconciliation, whether it was applied, rejected or ignored.
    Never updated or deleted.
    """

    __tablename__ = "subscription_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,  # Null when the owner could not be resolved
    )

    event_kind: Mapped[EventKind] = mapped_column(
        SQLEnum(EventKind),
        nullable=False,
    )
    provider: Mapped[Optional[Platform]] = mapped_column(
        SQLEnum(Platform),
        nullable=True,
    )
    outcome: Mapped[EventOutcome] = mapped_column(
        SQLEnum(EventOutcome),
        nullable=False,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    original_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # ``metadata`` is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_sub_events_user_kind", "user_id", "event_kind", "created_at"),
        Index("idx_sub_events_created", "created_at"),
        Index("idx_sub_events_lineage", "original_transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionEventRecord(user_id={self.user_id}, "
            f"kind={self.event_kind}, outcome={self.outcome})>"
        )
