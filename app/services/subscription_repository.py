"""
Subscription Repository
=======================

Data access for subscription records and the audit trail. All methods
run inside the caller's transaction; nothing here commits.
"""

import logging
from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import PersistenceTransientError
from app.models.subscription import (
    EventKind,
    EventOutcome,
    Platform,
    Subscription,
    SubscriptionEventRecord,
)
from app.schemas.subscription import SubscriptionEventView, SubscriptionSnapshot
from app.utils.helpers import ensure_utc

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "plan",
    "status",
    "platform",
    "product_id",
    "original_transaction_id",
    "latest_transaction_id",
    "last_event_at",
    "expiry_date",
    "trial_end_date",
    "auto_renew",
    "refunded",
    "refund_date",
)


def to_snapshot(row: Subscription) -> SubscriptionSnapshot:
    """Detach an ORM row into an immutable snapshot."""
    return SubscriptionSnapshot(
        user_id=row.user_id,
        plan=row.plan,
        status=row.status,
        platform=row.platform,
        product_id=row.product_id,
        original_transaction_id=row.original_transaction_id,
        latest_transaction_id=row.latest_transaction_id,
        last_event_at=ensure_utc(row.last_event_at),
        expiry_date=ensure_utc(row.expiry_date),
        trial_end_date=ensure_utc(row.trial_end_date),
        auto_renew=row.auto_renew,
        refunded=row.refunded,
        refund_date=ensure_utc(row.refund_date),
        updated_at=ensure_utc(row.updated_at),
        version=row.version,
    )


class SubscriptionRepository:
    """Reads and writes subscription rows within one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def get(self, user_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: str) -> Optional[Subscription]:
        """Load a row and lock it until the transaction ends."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        row = await self.get(user_id)
        if row is None:
            return SubscriptionSnapshot.empty(user_id)
        return to_snapshot(row)

    async def find_user_by_lineage(self, original_transaction_id: str) -> Optional[str]:
        """Owner of a subscription lineage, if any record holds it."""
        result = await self.session.execute(
            select(Subscription.user_id)
            .where(Subscription.original_transaction_id == original_transaction_id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        row: Optional[Subscription],
        snapshot: SubscriptionSnapshot,
        now: datetime,
    ) -> Subscription:
        """
        Write ``snapshot`` over ``row`` (or insert a new row).

        The UPDATE is guarded by the row's version and the INSERT by
        the unique user id.

        Raises:
            PersistenceTransientError: Another writer got there first
        """
        if row is None:
            row = Subscription(user_id=snapshot.user_id, created_at=now)
            self.session.add(row)

        for field in SNAPSHOT_FIELDS:
            setattr(row, field, getattr(snapshot, field))
        row.updated_at = now

        try:
            await self.session.flush()
        except (StaleDataError, IntegrityError) as e:
            raise PersistenceTransientError(
                f"Concurrent write to subscription of user {snapshot.user_id}"
            ) from e
        return row

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    async def append_event(
        self,
        *,
        user_id: Optional[str],
        event_kind: EventKind,
        provider: Optional[Platform],
        outcome: EventOutcome,
        product_id: Optional[str],
        transaction_id: Optional[str],
        original_transaction_id: Optional[str],
        metadata: dict[str, Any],
        now: datetime,
    ) -> SubscriptionEventRecord:
        record = SubscriptionEventRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            event_kind=event_kind,
            provider=provider,
            outcome=outcome,
            product_id=product_id,
            transaction_id=transaction_id,
            original_transaction_id=original_transaction_id,
            event_metadata=metadata,
            created_at=now,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_events(
        self,
        user_id: str,
        event_kind: Optional[EventKind] = None,
        limit: int = 100,
    ) -> list[SubscriptionEventView]:
        """Audit history for a user, newest first."""
        query = select(SubscriptionEventRecord).where(
            SubscriptionEventRecord.user_id == user_id
        )
        if event_kind is not None:
            query = query.where(SubscriptionEventRecord.event_kind == event_kind)
        query = query.order_by(SubscriptionEventRecord.created_at.desc()).limit(limit)

        result = await self.session.execute(query)
        return [
            SubscriptionEventView(
                id=record.id,
                event_kind=record.event_kind,
                outcome=record.outcome,
                provider=record.provider,
                product_id=record.product_id,
                transaction_id=record.transaction_id,
                original_transaction_id=record.original_transaction_id,
                reason=(record.event_metadata or {}).get("reason"),
                created_at=ensure_utc(record.created_at),
            )
            for record in result.scalars().all()
        ]
