"""
Subscription State Machine
==========================

Pure transition function from (current snapshot, canonical event) to
the next snapshot. No I/O happens here; the caller is responsible for
loading and saving atomically.

States::

    none ──purchased──▶ active | trial
    active, trial, expired, canceled ──renewed──▶ active
    active, trial, canceled ──expired──▶ expired
    any non-refunded ──refunded──▶ refunded

Guards, evaluated in order before the transition table:

1. ``unknown`` events are ignored.
2. Replay: the event's transaction is the latest applied one and
   applying it again would change nothing. Renewals that carry no
   fresh id of their own (one purchase token for every period) count
   as new when they push the expiry or the event time forward.
3. Lineage: only ``purchased`` may move a subscription to a different
   ``original_transaction_id``.
4. Monotonicity: within a lineage, an event older than the newest
   applied one is rejected. A stale refund is a conflict that needs a
   human, since refunds are never undone automatically.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from app.core.plans import PlanCatalog, plan_expiry
from app.models.subscription import (
    EventKind,
    EventOutcome,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.schemas.subscription import (
    ACTIVE_STATUSES,
    SubscriptionEvent,
    SubscriptionSnapshot,
)
from app.utils.helpers import utc_now


class RejectionReason(str, Enum):
    """Why an event was not applied."""
    REPLAY_NOOP = "replay_noop"
    ORDERING_CONFLICT = "ordering_conflict"
    LINEAGE_MISMATCH = "lineage_mismatch"
    REFUND_CONFLICT = "refund_conflict"
    INVALID_TRANSITION = "invalid_transition"
    UNKNOWN_EVENT_KIND = "unknown_event_kind"
    UNKNOWN_PRODUCT = "unknown_product"


class TransitionResult(BaseModel):
    """Outcome of applying one event."""

    model_config = ConfigDict(frozen=True)

    state: SubscriptionSnapshot
    accepted: bool
    reason: Optional[RejectionReason] = None

    @property
    def outcome(self) -> EventOutcome:
        if self.accepted:
            return EventOutcome.APPLIED
        if self.reason == RejectionReason.UNKNOWN_EVENT_KIND:
            return EventOutcome.IGNORED
        return EventOutcome.REJECTED


RENEWABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELED,
)

EXPIRABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.CANCELED,
)


class SubscriptionStateMachine:
    """Decides the next subscription state for a canonical event."""

    def __init__(self, catalog: Optional[PlanCatalog] = None):
        self.catalog = catalog or PlanCatalog()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def apply(
        self,
        current: Optional[SubscriptionSnapshot],
        event: SubscriptionEvent,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Apply ``event`` to ``current``.

        Args:
            current: Persisted state, or None for a never-seen user.
            event: Canonical event.
            now: Evaluation time (defaults to the current UTC time).

        Returns:
            TransitionResult whose ``state`` is ``current`` unchanged
            whenever ``accepted`` is False.
        """
        now = now or utc_now()
        if current is None:
            current = SubscriptionSnapshot.empty(event.app_user_id or "")

        if event.kind == EventKind.UNKNOWN:
            return self._reject(current, RejectionReason.UNKNOWN_EVENT_KIND)

        if self._is_replay(current, event):
            return self._reject(current, RejectionReason.REPLAY_NOOP)

        same_lineage = (
            current.original_transaction_id is not None
            and event.original_transaction_id == current.original_transaction_id
        )

        if (
            current.original_transaction_id is not None
            and not same_lineage
            and event.kind != EventKind.PURCHASED
        ):
            return self._reject(current, RejectionReason.LINEAGE_MISMATCH)

        if (
            same_lineage
            and current.last_event_at is not None
            and event.occurred_at < current.last_event_at
        ):
            if event.kind == EventKind.REFUNDED:
                return self._reject(current, RejectionReason.REFUND_CONFLICT)
            return self._reject(current, RejectionReason.ORDERING_CONFLICT)

        if event.kind == EventKind.PURCHASED:
            return self._purchase(current, event, now, same_lineage)
        if event.kind == EventKind.RENEWED:
            return self._renew(current, event, now)
        if event.kind == EventKind.EXPIRED:
            return self._expire(current, event, now)
        return self._refund(current, event, now)

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    @staticmethod
    def _is_replay(current: SubscriptionSnapshot, event: SubscriptionEvent) -> bool:
        if event.transaction_id is None or event.transaction_id != current.latest_transaction_id:
            return False
        if event.original_transaction_id != current.original_transaction_id:
            return False

        if event.kind in (EventKind.PURCHASED, EventKind.RENEWED):
            if event.expires_at is not None and current.expiry_date is not None:
                return event.expires_at <= current.expiry_date
            if (
                event.kind == EventKind.RENEWED
                and event.transaction_id == event.original_transaction_id
            ):
                # Token-keyed renewals reuse one id for every period
                return (
                    current.last_event_at is not None
                    and event.occurred_at <= current.last_event_at
                )
            return True
        if event.kind == EventKind.EXPIRED:
            return current.status == SubscriptionStatus.EXPIRED
        return current.status == SubscriptionStatus.REFUNDED

    @staticmethod
    def _reject(
        current: SubscriptionSnapshot,
        reason: RejectionReason,
    ) -> TransitionResult:
        return TransitionResult(state=current, accepted=False, reason=reason)

    @staticmethod
    def _accept(state: SubscriptionSnapshot) -> TransitionResult:
        return TransitionResult(state=state, accepted=True)

    @staticmethod
    def _frontier(
        current: SubscriptionSnapshot,
        event: SubscriptionEvent,
        same_lineage: bool = True,
    ) -> datetime:
        if same_lineage and current.last_event_at is not None:
            return max(current.last_event_at, event.occurred_at)
        return event.occurred_at

    @staticmethod
    def _settle(
        status: SubscriptionStatus,
        plan: SubscriptionPlan,
        expiry: Optional[datetime],
        now: datetime,
    ) -> SubscriptionStatus:
        """An entitlement that has already lapsed is stored as expired."""
        if status in ACTIVE_STATUSES and plan != SubscriptionPlan.LIFETIME:
            if expiry is None or expiry <= now:
                return SubscriptionStatus.EXPIRED
        return status

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _purchase(
        self,
        current: SubscriptionSnapshot,
        event: SubscriptionEvent,
        now: datetime,
        same_lineage: bool,
    ) -> TransitionResult:
        plan = self.catalog.plan_for(event.product_id)
        if plan is None:
            return self._reject(current, RejectionReason.UNKNOWN_PRODUCT)

        if same_lineage:
            if current.status == SubscriptionStatus.REFUNDED:
                return self._reject(current, RejectionReason.INVALID_TRANSITION)
            if current.status in ACTIVE_STATUSES:
                # Another transaction of a lineage we already hold
                return self._renew(current, event, now)

        trial_end = None
        if plan == SubscriptionPlan.LIFETIME:
            status = SubscriptionStatus.ACTIVE
            expiry = None
        elif event.is_trial:
            status = SubscriptionStatus.TRIAL
            trial_end = event.expires_at or now + self.catalog.trial_period
            expiry = trial_end
        else:
            status = SubscriptionStatus.ACTIVE
            expiry = event.expires_at or plan_expiry(plan, now)

        return self._accept(
            current.model_copy(update={
                "plan": plan,
                "status": self._settle(status, plan, expiry, now),
                "platform": event.platform,
                "product_id": event.product_id,
                "original_transaction_id": event.original_transaction_id,
                "latest_transaction_id": event.transaction_id,
                "last_event_at": self._frontier(current, event, same_lineage),
                "expiry_date": expiry,
                "trial_end_date": trial_end,
                "auto_renew": plan != SubscriptionPlan.LIFETIME,
                "refunded": False,
                "refund_date": None,
                "updated_at": now,
            })
        )

    def _renew(
        self,
        current: SubscriptionSnapshot,
        event: SubscriptionEvent,
        now: datetime,
    ) -> TransitionResult:
        if (
            current.original_transaction_id is None
            or current.status not in RENEWABLE_STATUSES
        ):
            return self._reject(current, RejectionReason.INVALID_TRANSITION)

        plan = self.catalog.plan_for(event.product_id) or current.plan
        if plan == SubscriptionPlan.NONE:
            return self._reject(current, RejectionReason.UNKNOWN_PRODUCT)

        if plan == SubscriptionPlan.LIFETIME:
            expiry = None
        elif event.expires_at is not None:
            expiry = event.expires_at
        else:
            base = current.expiry_date if current.expiry_date and current.expiry_date > now else now
            expiry = plan_expiry(plan, base)

        return self._accept(
            current.model_copy(update={
                "plan": plan,
                "status": self._settle(SubscriptionStatus.ACTIVE, plan, expiry, now),
                "platform": event.platform,
                "product_id": event.product_id or current.product_id,
                "latest_transaction_id": event.transaction_id,
                "last_event_at": self._frontier(current, event),
                "expiry_date": expiry,
                "auto_renew": plan != SubscriptionPlan.LIFETIME,
                "updated_at": now,
            })
        )

    def _expire(
        self,
        current: SubscriptionSnapshot,
        event: SubscriptionEvent,
        now: datetime,
    ) -> TransitionResult:
        if current.status == SubscriptionStatus.EXPIRED:
            return self._reject(current, RejectionReason.REPLAY_NOOP)
        if current.status not in EXPIRABLE_STATUSES:
            return self._reject(current, RejectionReason.INVALID_TRANSITION)

        return self._accept(
            current.model_copy(update={
                "status": SubscriptionStatus.EXPIRED,
                "platform": event.platform,
                "last_event_at": self._frontier(current, event),
                "auto_renew": False,
                "updated_at": now,
            })
        )

    def _refund(
        self,
        current: SubscriptionSnapshot,
        event: SubscriptionEvent,
        now: datetime,
    ) -> TransitionResult:
        if current.status == SubscriptionStatus.REFUNDED:
            return self._reject(current, RejectionReason.REPLAY_NOOP)
        if not current.exists or current.original_transaction_id is None:
            return self._reject(current, RejectionReason.INVALID_TRANSITION)

        return self._accept(
            current.model_copy(update={
                "status": SubscriptionStatus.REFUNDED,
                "platform": event.platform,
                "last_event_at": self._frontier(current, event),
                "auto_renew": False,
                "refunded": True,
                "refund_date": now,
                "updated_at": now,
            })
        )
