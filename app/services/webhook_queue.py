"""
Webhook Event Queue
===================

Optional hand-off between the webhook ingress and reconciliation
through a Redis Stream (``stream:subscription:webhooks``).

The ingress enqueues ``{user_id, event}`` and acknowledges the store
immediately; ``WebhookEventWorker`` consumes the stream with at-least-once
semantics. Redelivery is safe because the state machine treats a
repeated transaction as a no-op.

Lifecycle:
    1. ``start()`` is called during the FastAPI lifespan startup when
       ``WEBHOOK_QUEUE_ENABLED`` is set.
    2. The worker creates its consumer group (idempotent) and loops on
       ``XREADGROUP``.
    3. ``stop()`` is called during shutdown.

Retry / DLQ:
    - A message whose event could not be processed stays pending and
      is claimed again once it has been idle for ``RECLAIM_IDLE_MS``.
    - After ``max_retries`` deliveries it is copied to the dead-letter
      stream and ACKed.
"""

import asyncio
import logging
import os
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import ResponseError

from app.config import settings
from app.schemas.subscription import SubscriptionEvent
from app.services.cache import CacheKeys, get_redis
from app.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STREAM_KEY = CacheKeys.webhook_stream()
DLQ_STREAM = CacheKeys.webhook_dead_letter()
CONSUMER_GROUP = "subscription-workers"
STREAM_MAXLEN = 100_000
BLOCK_MS = 200  # how long XREADGROUP blocks before returning empty
BATCH_SIZE = 50  # max messages per XREADGROUP call
RECLAIM_IDLE_MS = 30_000


# ---------------------------------------------------------------------------
# Producer
# ---------------------------------------------------------------------------

class SubscriptionEventQueue:
    """Producer side of the webhook stream."""

    async def enqueue(self, user_id: Optional[str], event: SubscriptionEvent) -> str:
        """
        Append an event to the stream.

        Returns:
            Stream message id
        """
        client = await get_redis()
        msg_id = await client.xadd(
            STREAM_KEY,
            {"user_id": user_id or "", "event": event.model_dump_json()},
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )
        logger.info(
            "Queued %s %s event as %s",
            event.platform.value,
            event.kind.value,
            msg_id,
        )
        return msg_id


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------

class WebhookEventWorker:
    """Background worker that drains the webhook stream into reconciliation."""

    def __init__(
        self,
        service: Optional[ReconciliationService] = None,
        max_retries: Optional[int] = None,
        consumer_name: Optional[str] = None,
    ) -> None:
        self.service = service or ReconciliationService()
        self.max_retries = (
            max_retries if max_retries is not None else settings.WEBHOOK_QUEUE_MAX_RETRIES
        )
        self.consumer_name = consumer_name or f"worker-{os.getpid()}"
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Create consumer group and start the processing loop."""
        try:
            client = await get_redis()
            try:
                await client.xgroup_create(
                    STREAM_KEY, CONSUMER_GROUP, id="0", mkstream=True,
                )
                logger.info("Created consumer group '%s'", CONSUMER_GROUP)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

            self._running = True
            self._task = asyncio.create_task(self._process_loop())
            logger.info("WebhookEventWorker started as %s", self.consumer_name)
        except Exception as exc:
            logger.error("WebhookEventWorker failed to start: %s", exc)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("WebhookEventWorker did not stop in time; cancelling")
                self._task.cancel()
            self._task = None
        logger.info("WebhookEventWorker stopped")

    # -- main loop ---------------------------------------------------------

    async def _process_loop(self) -> None:
        while self._running:
            try:
                await self._reclaim_pending()
                await self._read_and_process()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("WebhookEventWorker loop error: %s", exc)
                await asyncio.sleep(1)

    async def _read_and_process(self) -> None:
        """Read a batch of new messages and process them."""
        client = await get_redis()
        messages = await client.xreadgroup(
            CONSUMER_GROUP,
            self.consumer_name,
            {STREAM_KEY: ">"},
            count=BATCH_SIZE,
            block=BLOCK_MS,
        )
        if not messages:
            return

        for _stream_name, entries in messages:
            for msg_id, fields in entries:
                await self._handle_message(client, msg_id, fields)

    async def _reclaim_pending(self) -> None:
        """
        Dead-letter messages that were delivered too often and claim
        the rest of the idle ones for another attempt.
        """
        client = await get_redis()
        pending = await client.xpending_range(
            STREAM_KEY, CONSUMER_GROUP, "-", "+", count=BATCH_SIZE,
        )

        retry_ids = []
        for entry in pending:
            msg_id = entry["message_id"]
            if entry["times_delivered"] >= self.max_retries:
                await self._dead_letter(client, msg_id, entry["times_delivered"])
            elif entry["time_since_delivered"] >= RECLAIM_IDLE_MS:
                retry_ids.append(msg_id)

        if not retry_ids:
            return

        claimed = await client.xclaim(
            STREAM_KEY,
            CONSUMER_GROUP,
            self.consumer_name,
            RECLAIM_IDLE_MS,
            retry_ids,
        )
        for msg_id, fields in claimed:
            if fields:
                await self._handle_message(client, msg_id, fields)

    async def _dead_letter(self, client: Any, msg_id: str, times_delivered: int) -> None:
        try:
            raw_msgs = await client.xrange(STREAM_KEY, msg_id, msg_id)
            if raw_msgs:
                _, fields = raw_msgs[0]
                fields["original_id"] = msg_id
                fields["retries"] = str(times_delivered)
                await client.xadd(DLQ_STREAM, fields, maxlen=5000, approximate=True)
            await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
            logger.warning(
                "Moved webhook event %s to DLQ after %d deliveries",
                msg_id,
                times_delivered,
            )
        except Exception as exc:
            logger.error("DLQ move error for %s: %s", msg_id, exc)

    # -- message handler ---------------------------------------------------

    async def _handle_message(self, client: Any, msg_id: str, fields: dict) -> None:
        """Reconcile a single stream message, ACK unless it must be retried."""
        try:
            event = SubscriptionEvent.model_validate_json(fields.get("event", ""))
        except PydanticValidationError:
            logger.error("Unreadable event in message %s, ACKing to skip", msg_id)
            await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
            return

        outcome = await self.service.reconcile_from_webhook(
            fields.get("user_id") or None, event,
        )
        if outcome is None:
            # Left pending; picked up again by _reclaim_pending
            logger.error("Reconciliation failed for message %s", msg_id)
            return

        await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
