"""
Event Normalizer
================

Turns store-specific webhook payloads into canonical
``SubscriptionEvent`` objects.

Store A (App Store style)::

    {"notificationType": "DID_RENEW", "signedDate": 1718000000000,
     "data": {"transactionInfo": {"originalTransactionId": "...",
                                  "transactionId": "...",
                                  "productId": "...",
                                  "expiresDate": 1720592000000}},
     "signedPayload": "..."}

``data.signedTransactionInfo`` may replace ``transactionInfo`` either
as an object or as a compact JWS whose claims carry the same fields.

Store B (Play style), either the flattened test shape keyed by
``messageType`` or the production shape keyed by the notification
object::

    {"messageType": "SUBSCRIPTION_RENEWED",
     "data": {"subscriptionNotification": {"purchaseToken": "...",
                                           "subscriptionId": "...",
                                           "orderId": "..."}}}

    {"eventTimeMillis": "1718000000000",
     "subscriptionNotification": {"notificationType": 2, ...}}

Normalization never raises; anything it cannot make sense of becomes
an ``unknown`` event, which reconciliation records and ignores.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from jose import JWTError, jwt

from app.models.subscription import EventKind, Platform, Provider
from app.schemas.subscription import SubscriptionEvent
from app.utils.helpers import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


# ─── Vocabularies ────────────────────────────────────────────────────────────

# Purchase-like types become ``purchased`` for the first transaction of a
# lineage and ``renewed`` afterwards.
STORE_A_PURCHASE_TYPES = frozenset({
    "INITIAL_BUY",
    "DID_RENEW",
    "INTERACTIVE_RENEWAL",
    "CONSUMPTION_REQUEST",
})

STORE_A_KINDS = {
    "EXPIRED": EventKind.EXPIRED,
    "DID_FAIL_TO_RENEW": EventKind.EXPIRED,
    "GRACE_PERIOD": EventKind.EXPIRED,
    "REFUND": EventKind.REFUNDED,
    "REVOKE": EventKind.REFUNDED,
}

STORE_B_MESSAGE_TYPES = {
    "SUBSCRIPTION_PURCHASED": EventKind.PURCHASED,
    "SUBSCRIPTION_RENEWED": EventKind.RENEWED,
    "SUBSCRIPTION_EXPIRED": EventKind.EXPIRED,
    "SUBSCRIPTION_CANCELED": EventKind.EXPIRED,
    "SUBSCRIPTION_REVOKED": EventKind.REFUNDED,
}

# Real-time developer notification codes
STORE_B_NOTIFICATION_CODES = {
    1: EventKind.RENEWED,    # RECOVERED
    2: EventKind.RENEWED,    # RENEWED
    3: EventKind.EXPIRED,    # CANCELED
    4: EventKind.PURCHASED,  # PURCHASED
    7: EventKind.RENEWED,    # RESTARTED
    12: EventKind.REFUNDED,  # REVOKED
    13: EventKind.EXPIRED,   # EXPIRED
}

STORE_B_ONE_TIME_PURCHASED = 1


# ─── Helpers ─────────────────────────────────────────────────────────────────


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _is_true(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.lower() == "true")


def _unverified_claims(token: str) -> dict:
    """Claims of a compact JWS whose envelope was already authenticated."""
    try:
        return _as_dict(jwt.get_unverified_claims(token))
    except JWTError:
        logger.warning("Could not decode signed transaction info")
        return {}


def _finalize(
    *,
    kind: EventKind,
    platform: Platform,
    original_transaction_id: Optional[str],
    transaction_id: Optional[str],
    product_id: Optional[str],
    payload: dict,
    **fields: Any,
) -> SubscriptionEvent:
    """Apply identity fallbacks and downgrade incomplete events to unknown."""
    original_transaction_id = original_transaction_id or transaction_id
    transaction_id = transaction_id or original_transaction_id

    if not product_id or not transaction_id:
        if kind != EventKind.UNKNOWN:
            logger.warning(
                "%s notification %s is missing product or transaction identity",
                platform.value,
                fields.get("notification_type"),
            )
        kind = EventKind.UNKNOWN

    return SubscriptionEvent(
        kind=kind,
        platform=platform,
        original_transaction_id=original_transaction_id,
        transaction_id=transaction_id,
        product_id=product_id,
        raw_payload=payload,
        **fields,
    )


# ─── Store A ─────────────────────────────────────────────────────────────────


def _store_a_transaction(payload: dict) -> dict:
    data = _as_dict(payload.get("data"))

    info = data.get("transactionInfo")
    if isinstance(info, dict):
        return info

    signed = data.get("signedTransactionInfo")
    if isinstance(signed, dict):
        return signed
    if isinstance(signed, str):
        return _unverified_claims(signed)
    return {}


def normalize_store_a(payload: dict, received_at: datetime) -> SubscriptionEvent:
    """Normalize a store A server notification."""
    data = _as_dict(payload.get("data"))
    info = _store_a_transaction(payload)

    notification_type = _as_str(
        _first(payload.get("notificationType"), payload.get("notification_type"))
    )
    original_transaction_id = _as_str(info.get("originalTransactionId"))
    transaction_id = _as_str(info.get("transactionId"))

    if notification_type in STORE_A_PURCHASE_TYPES:
        has_prior = (
            original_transaction_id is not None
            and transaction_id is not None
            and original_transaction_id != transaction_id
        )
        kind = EventKind.RENEWED if has_prior else EventKind.PURCHASED
    else:
        kind = STORE_A_KINDS.get(notification_type or "", EventKind.UNKNOWN)

    occurred_at = parse_timestamp(
        _first(
            payload.get("signedDate"),
            data.get("signedDate"),
            info.get("signedDate"),
            info.get("purchaseDate"),
        )
    )

    return _finalize(
        kind=kind,
        platform=Platform.STORE_A,
        original_transaction_id=original_transaction_id,
        transaction_id=transaction_id,
        product_id=_as_str(info.get("productId")),
        payload=payload,
        notification_type=notification_type,
        occurred_at=occurred_at or received_at,
        expires_at=parse_timestamp(info.get("expiresDate")),
        is_trial=info.get("offerType") == 1 or _is_true(info.get("isTrialPeriod")),
        app_user_id=_as_str(
            _first(
                info.get("appAccountToken"),
                payload.get("userId"),
                payload.get("user_id"),
            )
        ),
    )


# ─── Store B ─────────────────────────────────────────────────────────────────


def _store_b_kind(
    message_type: Optional[str],
    subscription: dict,
    one_time: dict,
) -> tuple[EventKind, Optional[str]]:
    """Return (kind, vocabulary label) for a store B notification."""
    if message_type:
        return STORE_B_MESSAGE_TYPES.get(message_type, EventKind.UNKNOWN), message_type

    if subscription:
        code = subscription.get("notificationType")
        try:
            code = int(code)
        except (TypeError, ValueError):
            return EventKind.UNKNOWN, _as_str(code)
        return (
            STORE_B_NOTIFICATION_CODES.get(code, EventKind.UNKNOWN),
            f"SUBSCRIPTION_NOTIFICATION_{code}",
        )

    if one_time:
        code = one_time.get("notificationType")
        if str(code) == str(STORE_B_ONE_TIME_PURCHASED):
            return EventKind.PURCHASED, "ONE_TIME_PRODUCT_PURCHASED"
        return EventKind.UNKNOWN, f"ONE_TIME_PRODUCT_NOTIFICATION_{code}"

    return EventKind.UNKNOWN, None


def normalize_store_b(payload: dict, received_at: datetime) -> SubscriptionEvent:
    """Normalize a store B real-time notification."""
    data = _as_dict(payload.get("data"))
    subscription = _as_dict(
        _first(payload.get("subscriptionNotification"), data.get("subscriptionNotification"))
    )
    one_time = _as_dict(
        _first(payload.get("oneTimeProductNotification"), data.get("oneTimeProductNotification"))
    )
    source = subscription or one_time

    message_type = _as_str(payload.get("messageType"))
    kind, notification_type = _store_b_kind(message_type, subscription, one_time)

    # Store B has no separate lineage id: the purchase token is stable
    # across renewals while the order id changes per renewal.
    purchase_token = _as_str(_first(source.get("purchaseToken"), payload.get("purchaseToken")))
    transaction_id = _as_str(_first(source.get("orderId"), payload.get("transactionId")))
    original_transaction_id = _as_str(
        _first(purchase_token, payload.get("originalTransactionId"))
    )

    occurred_at = parse_timestamp(
        _first(payload.get("eventTimeMillis"), data.get("eventTimeMillis"))
    )

    return _finalize(
        kind=kind,
        platform=Platform.STORE_B,
        original_transaction_id=original_transaction_id,
        transaction_id=transaction_id,
        product_id=_as_str(
            _first(source.get("subscriptionId"), source.get("sku"), payload.get("productId"))
        ),
        payload=payload,
        notification_type=notification_type,
        occurred_at=occurred_at or received_at,
        expires_at=parse_timestamp(source.get("expiryTimeMillis")),
        is_trial=source.get("paymentState") == 2 or _is_true(source.get("isTrial")),
        app_user_id=_as_str(
            _first(
                source.get("obfuscatedExternalAccountId"),
                payload.get("userId"),
                payload.get("user_id"),
            )
        ),
    )


# ─── Entry Point ─────────────────────────────────────────────────────────────


_NORMALIZERS = {
    Provider.STORE_A: normalize_store_a,
    Provider.STORE_B: normalize_store_b,
}


def normalize_event(
    provider: Provider,
    payload: Any,
    received_at: Optional[datetime] = None,
) -> SubscriptionEvent:
    """
    Normalize a parsed webhook payload from ``provider``.

    Args:
        provider: Store that sent the payload (detected by the caller)
        payload: Parsed JSON body
        received_at: Fallback occurrence time when the payload has none

    Returns:
        Canonical event; kind ``unknown`` when the payload is unusable.
    """
    received_at = received_at or utc_now()
    platform = provider.platform

    if not isinstance(payload, dict):
        return SubscriptionEvent(
            kind=EventKind.UNKNOWN,
            platform=platform,
            occurred_at=received_at,
        )

    try:
        return _NORMALIZERS[provider](payload, received_at)
    except Exception:
        logger.exception("Failed to normalize %s payload", provider.value)
        return SubscriptionEvent(
            kind=EventKind.UNKNOWN,
            platform=platform,
            occurred_at=received_at,
            raw_payload=payload,
        )
