"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata.
"""

from app.models.subscription import (
    EventKind,
    EventOutcome,
    Platform,
    Provider,
    Subscription,
    SubscriptionEventRecord,
    SubscriptionPlan,
    SubscriptionStatus,
)

__all__ = [
    "EventKind",
    "EventOutcome",
    "Platform",
    "Provider",
    "Subscription",
    "SubscriptionEventRecord",
    "SubscriptionPlan",
    "SubscriptionStatus",
]
