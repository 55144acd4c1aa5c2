"""
Webhooks API Endpoints
======================

Single ingress for store subscription notifications.

Flow:
    raw body -> JSON -> provider detection -> signature check ->
    normalization -> reconciliation (inline or via the Redis stream)

Authentication:
    None at the transport level. Each store signs the exact request
    bytes, so the body is read raw before anything parses it.

Responses:
    Always HTTP 200 (see ``always_acknowledge``): ``{"status": "ok"}``
    when the notification was accepted for processing, otherwise
    ``{"status": "error", "message": ...}``. Stores retry non-2xx
    answers; error detail goes to logs and the audit trail only.
"""

import json
import logging
from typing import Optional

import newrelic.agent
from fastapi import APIRouter, Request

from app.core.errors import (
    WEBHOOK_OK,
    SignatureInvalidError,
    UnknownProviderError,
    always_acknowledge,
    webhook_error,
)
from app.dependencies import EventQueue, Reconciliation, Verifier
from app.models.subscription import EventOutcome
from app.schemas.common import WebhookAck
from app.schemas.subscription import SubscriptionEvent
from app.services.reconciliation import UNKNOWN_PROVIDER, ReconciliationService
from app.services.store_providers import resolve_provider
from app.services.webhook_queue import SubscriptionEventQueue
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


def _annotate_transaction(provider: str, outcome: str) -> None:
    """Attach webhook attributes to the active New Relic transaction."""
    if newrelic.agent.current_transaction() is None:
        return
    newrelic.agent.add_custom_attributes([
        ("webhook.provider", provider),
        ("webhook.outcome", outcome),
    ])


async def _dispatch(
    event: SubscriptionEvent,
    service: ReconciliationService,
    queue: Optional[SubscriptionEventQueue],
) -> str:
    """Hand the event to the worker stream, or reconcile it inline."""
    if queue is not None:
        try:
            await queue.enqueue(event.app_user_id, event)
            return "queued"
        except Exception as exc:
            logger.warning("Webhook queue unavailable, processing inline: %s", exc)

    outcome = await service.reconcile_from_webhook(event.app_user_id, event)
    return outcome.value if outcome is not None else "failed"


@router.post(
    "/webhook",
    response_model=WebhookAck,
    response_model_exclude_none=True,
)
@always_acknowledge
async def subscription_webhook(
    request: Request,
    service: Reconciliation,
    verifier: Verifier,
    queue: EventQueue,
):
    """
    Handle store A and store B subscription notifications.

    Unrecognised senders are acknowledged and audited as ignored. Bodies
    with a bad or missing signature are logged and answered with an
    error status; they never reach the audit trail.
    """
    raw_body = await request.body()

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid webhook payload: %s", e)
        _annotate_transaction("unknown", "invalid_payload")
        return webhook_error("Invalid JSON payload")

    try:
        store = resolve_provider(request.headers, payload)
    except UnknownProviderError:
        logger.info("Webhook from unrecognised sender acknowledged without processing")
        await service.record_unattributed(payload, UNKNOWN_PROVIDER)
        _annotate_transaction("unknown", EventOutcome.IGNORED.value)
        return WEBHOOK_OK

    provider = store.provider.value
    try:
        store.authenticate(raw_body, request.headers, verifier)
    except SignatureInvalidError as e:
        logger.warning("%s", e)
        _annotate_transaction(provider, "invalid_signature")
        return webhook_error("Invalid signature")

    event = store.normalize(payload, utc_now())
    logger.info(
        "Webhook received: provider=%s type=%s kind=%s lineage=%s",
        provider,
        event.notification_type,
        event.kind.value,
        event.original_transaction_id,
    )

    outcome = await _dispatch(event, service, queue)
    _annotate_transaction(provider, outcome)

    if outcome == "failed":
        return webhook_error("Error processing webhook")
    return WEBHOOK_OK
