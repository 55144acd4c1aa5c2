"""
Reconciliation Service
======================

Applies canonical subscription events to persisted state.

Both producers, store webhooks and client receipt validation, go
through the same path: one short transaction per attempt that loads
the user's row ``FOR UPDATE``, runs the state machine, writes the new
state (version compare-and-swap) and appends an audit record.

Transient storage failures (version conflicts, a concurrent first
insert, lost connections, timeouts) are retried with exponential
backoff. When retries run out the event is logged as failed; the gap
in the audit trail is what operators look for.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.errors import (
    ErrorCodes,
    PersistenceFatalError,
    PersistenceTransientError,
    ReceiptInvalidError,
    ServiceUnavailableError,
    ValidationError,
)
from app.core.plans import PlanCatalog
from app.db.session import get_session_factory
from app.models.subscription import EventKind, EventOutcome, Platform
from app.schemas.subscription import (
    SubscriptionEvent,
    SubscriptionEventView,
    SubscriptionSnapshot,
    SubscriptionStatusView,
)
from app.services.cache import SubscriptionCache
from app.services.receipt_validator import LocalReceiptValidator, ReceiptValidator
from app.services.subscription_repository import SubscriptionRepository, to_snapshot
from app.services.subscription_state import (
    RejectionReason,
    SubscriptionStateMachine,
    TransitionResult,
)
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (
    StaleDataError,
    IntegrityError,
    OperationalError,
    InterfaceError,
    asyncio.TimeoutError,
    PersistenceTransientError,
)

UNRESOLVED_USER = "unresolved_user"
UNKNOWN_PROVIDER = "unknown_provider"
RECEIPT_NOTIFICATION_TYPE = "RECEIPT_VALIDATION"


def audit_metadata(
    event: SubscriptionEvent,
    outcome: EventOutcome,
    reason: Optional[str],
) -> dict:
    """Metadata stored with every audit record."""
    return {
        "outcome": outcome.value,
        "reason": reason,
        "provider": event.platform.value,
        "notification_type": event.notification_type,
        "payload": event.raw_payload,
    }


class ReconciliationService:
    """Serializes webhook and receipt events onto per-user subscription state."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        catalog: Optional[PlanCatalog] = None,
        receipt_validator: Optional[ReceiptValidator] = None,
        cache: Optional[SubscriptionCache] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.state_machine = SubscriptionStateMachine(catalog)
        self.catalog = self.state_machine.catalog
        self.receipt_validator = receipt_validator or LocalReceiptValidator()

        if cache is None and settings.SUBSCRIPTION_CACHE_ENABLED:
            cache = SubscriptionCache()
        self.cache = cache

        self.max_retries = (
            max_retries if max_retries is not None else settings.PERSISTENCE_MAX_RETRIES
        )
        self.base_delay = (
            base_delay if base_delay is not None else settings.PERSISTENCE_RETRY_BASE_DELAY
        )
        self.timeout = timeout if timeout is not None else settings.PERSISTENCE_TIMEOUT_SECONDS

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        # Resolved on first use so the service can be built without a database
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # -------------------------------------------------------------------------
    # Webhook path
    # -------------------------------------------------------------------------

    async def reconcile_from_webhook(
        self,
        user_id: Optional[str],
        event: SubscriptionEvent,
    ) -> Optional[EventOutcome]:
        """
        Apply a store notification.

        Args:
            user_id: Owner if the caller already knows it; otherwise it is
                taken from the event or looked up by lineage.
            event: Normalized, authenticated event.

        Returns:
            The audited outcome, or None if the event could not be
            processed. Never raises.
        """
        user_id = user_id or event.app_user_id

        try:
            user_id, result = await self._run_in_transaction(
                lambda session: self._apply_webhook(session, user_id, event),
                label=f"{event.platform.value} {event.kind.value} event",
            )
        except PersistenceFatalError:
            logger.exception(
                "Dropping %s event for lineage %s: persistence retries exhausted",
                event.kind.value,
                event.original_transaction_id,
            )
            return None
        except Exception:
            logger.exception(
                "Dropping %s event for lineage %s: unexpected error",
                event.kind.value,
                event.original_transaction_id,
            )
            return None

        if result is None:
            logger.info(
                "No subscriber found for %s event (lineage %s)",
                event.kind.value,
                event.original_transaction_id,
            )
            return EventOutcome.IGNORED

        self._log_result(user_id, event, result)
        if result.accepted:
            await self._publish(result.state)
        return result.outcome

    async def _apply_webhook(
        self,
        session: AsyncSession,
        user_id: Optional[str],
        event: SubscriptionEvent,
    ) -> tuple[Optional[str], Optional[TransitionResult]]:
        repository = SubscriptionRepository(session)

        if user_id is None and event.original_transaction_id:
            user_id = await repository.find_user_by_lineage(event.original_transaction_id)

        if user_id is None:
            await self._audit(
                repository, None, event, EventOutcome.IGNORED, UNRESOLVED_USER, utc_now()
            )
            return None, None

        return user_id, await self._apply(repository, user_id, event)

    async def record_unattributed(self, payload: Any, reason: str) -> None:
        """Audit a notification that no store provider claimed. Never raises."""
        metadata = {
            "outcome": EventOutcome.IGNORED.value,
            "reason": reason,
            "provider": None,
            "notification_type": None,
            "payload": payload,
        }
        now = utc_now()

        try:
            await self._run_in_transaction(
                lambda session: SubscriptionRepository(session).append_event(
                    user_id=None,
                    event_kind=EventKind.UNKNOWN,
                    provider=None,
                    outcome=EventOutcome.IGNORED,
                    product_id=None,
                    transaction_id=None,
                    original_transaction_id=None,
                    metadata=metadata,
                    now=now,
                ),
                label="unattributed webhook",
            )
        except Exception:
            logger.exception("Failed to audit webhook from unrecognised sender")

    # -------------------------------------------------------------------------
    # Receipt path
    # -------------------------------------------------------------------------

    async def reconcile_from_receipt(
        self,
        user_id: str,
        receipt: str,
        product_id: str,
        platform: Platform,
    ) -> SubscriptionStatusView:
        """
        Apply a client-submitted purchase receipt.

        Raises:
            ValidationError: Unknown product or unacceptable receipt
            ServiceUnavailableError: State could not be persisted
        """
        if self.catalog.plan_for(product_id) is None:
            raise ValidationError(
                message="Invalid product ID",
                field="productId",
                code=ErrorCodes.SUB_INVALID_PRODUCT,
            )

        try:
            validated = await self.receipt_validator.validate(receipt, product_id, platform)
        except ReceiptInvalidError as e:
            raise ValidationError(
                message=str(e) or "Invalid receipt",
                field="receipt",
                code=ErrorCodes.SUB_INVALID_RECEIPT,
            )

        event = SubscriptionEvent(
            kind=EventKind.PURCHASED,
            platform=platform,
            original_transaction_id=validated.original_transaction_id,
            transaction_id=validated.transaction_id,
            product_id=product_id,
            occurred_at=utc_now(),
            notification_type=RECEIPT_NOTIFICATION_TYPE,
            expires_at=validated.expires_at,
            is_trial=validated.is_trial,
            app_user_id=user_id,
            raw_payload={"productId": product_id, "platform": platform.value},
        )

        try:
            result = await self._run_in_transaction(
                lambda session: self._apply(SubscriptionRepository(session), user_id, event),
                label="receipt validation",
            )
        except PersistenceFatalError:
            logger.exception("Failed to save subscription for user %s", user_id)
            raise ServiceUnavailableError(
                code=ErrorCodes.SUB_PERSISTENCE_FAILED,
                message="Failed to save subscription",
            )

        self._log_result(user_id, event, result)
        if result.accepted:
            await self._publish(result.state)
        return result.state.to_status_view(utc_now())

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        if self.cache is not None:
            cached = await self.cache.get(user_id)
            if cached is not None:
                return cached

        try:
            async with self.session_factory() as session:
                snapshot = await SubscriptionRepository(session).get_snapshot(user_id)
        except SQLAlchemyError:
            logger.exception("Failed to load subscription for user %s", user_id)
            raise ServiceUnavailableError(
                code=ErrorCodes.SUB_PERSISTENCE_FAILED,
                message="Failed to get subscription status",
            )

        if self.cache is not None and snapshot.exists:
            await self.cache.populate(snapshot)
        return snapshot

    async def get_status(self, user_id: str) -> SubscriptionStatusView:
        """Status view with ``isActive`` derived at call time."""
        snapshot = await self.get_snapshot(user_id)
        return snapshot.to_status_view(utc_now())

    async def sync_status(self, user_id: str) -> SubscriptionStatusView:
        """Status read straight from the database, refreshing the cache."""
        await self._invalidate(user_id)
        return await self.get_status(user_id)

    async def list_events(
        self,
        user_id: str,
        event_kind: Optional[EventKind] = None,
    ) -> list[SubscriptionEventView]:
        try:
            async with self.session_factory() as session:
                return await SubscriptionRepository(session).list_events(user_id, event_kind)
        except SQLAlchemyError:
            logger.exception("Failed to load subscription events for user %s", user_id)
            raise ServiceUnavailableError(
                code=ErrorCodes.SUB_PERSISTENCE_FAILED,
                message="Failed to get subscription events",
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _apply(
        self,
        repository: SubscriptionRepository,
        user_id: str,
        event: SubscriptionEvent,
    ) -> TransitionResult:
        now = utc_now()
        row = await repository.get_for_update(user_id)
        current = to_snapshot(row) if row is not None else SubscriptionSnapshot.empty(user_id)

        result = self.state_machine.apply(current, event, now)
        if result.accepted:
            row = await repository.save(row, result.state, now)
            result = result.model_copy(
                update={"state": result.state.model_copy(update={"version": row.version})}
            )

        await self._audit(
            repository,
            user_id,
            event,
            result.outcome,
            result.reason.value if result.reason else None,
            now,
        )
        return result

    @staticmethod
    async def _audit(
        repository: SubscriptionRepository,
        user_id: Optional[str],
        event: SubscriptionEvent,
        outcome: EventOutcome,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        await repository.append_event(
            user_id=user_id,
            event_kind=event.kind,
            provider=event.platform,
            outcome=outcome,
            product_id=event.product_id,
            transaction_id=event.transaction_id,
            original_transaction_id=event.original_transaction_id,
            metadata=audit_metadata(event, outcome, reason),
            now=now,
        )

    async def _attempt(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.session_factory() as session:
            async with session.begin():
                return await operation(session)

    async def _run_in_transaction(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        label: str,
    ) -> T:
        """
        Run ``operation`` in a fresh transaction, retrying transient failures.

        Raises:
            PersistenceFatalError: Retries exhausted
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(self._attempt(operation), timeout=self.timeout)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise PersistenceFatalError(
                        f"{label} failed after {attempt + 1} attempts"
                    ) from e

                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    "Transient persistence failure for %s (attempt %d/%d): %s: %s; retrying in %.2fs",
                    label,
                    attempt + 1,
                    self.max_retries + 1,
                    type(e).__name__,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

    @staticmethod
    def _log_result(
        user_id: Optional[str],
        event: SubscriptionEvent,
        result: TransitionResult,
    ) -> None:
        if result.accepted:
            logger.info(
                "Applied %s %s for user %s: status=%s plan=%s",
                event.platform.value,
                event.kind.value,
                user_id,
                result.state.status.value,
                result.state.plan.value,
            )
        elif result.reason == RejectionReason.REFUND_CONFLICT:
            logger.warning(
                "Refund for lineage %s (user %s) is older than the last applied event; "
                "needs manual review",
                event.original_transaction_id,
                user_id,
            )
        else:
            logger.info(
                "Rejected %s %s for user %s: %s",
                event.platform.value,
                event.kind.value,
                user_id,
                result.reason.value if result.reason else None,
            )

    async def _invalidate(self, user_id: Optional[str]) -> None:
        if self.cache is not None and user_id:
            await self.cache.invalidate(user_id)

    async def _publish(self, state: SubscriptionSnapshot) -> None:
        """Write a committed snapshot through to the cache."""
        if self.cache is None:
            return
        if not await self.cache.store(state):
            await self.cache.invalidate(state.user_id)
