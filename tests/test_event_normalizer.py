"""
Event Normalizer Tests
======================

Store vocabularies mapped to canonical event kinds.
"""

from datetime import datetime, timezone

import pytest
from jose import jwt

from app.models.subscription import EventKind, Platform, Provider
from app.services.event_normalizer import normalize_event

RECEIVED_AT = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def store_a_payload(notification_type: str, **info) -> dict:
    transaction = {
        "originalTransactionId": "1000",
        "transactionId": "1000",
        "productId": "monthly_subscription",
    }
    transaction.update(info)
    return {
        "notificationType": notification_type,
        "signedDate": 1768046400000,
        "data": {"transactionInfo": transaction},
        "signedPayload": "opaque",
    }


def store_b_payload(message_type: str, **notification) -> dict:
    body = {
        "purchaseToken": "token-1",
        "subscriptionId": "yearly_subscription",
        "orderId": "GPA.1",
    }
    body.update(notification)
    return {"messageType": message_type, "data": {"subscriptionNotification": body}}


class TestStoreA:
    """Store A notification types."""

    @pytest.mark.parametrize("notification_type", [
        "INITIAL_BUY", "DID_RENEW", "INTERACTIVE_RENEWAL", "CONSUMPTION_REQUEST",
    ])
    def test_first_transaction_is_purchase(self, notification_type):
        event = normalize_event(Provider.STORE_A, store_a_payload(notification_type), RECEIVED_AT)
        assert event.kind == EventKind.PURCHASED

    def test_later_transaction_is_renewal(self):
        payload = store_a_payload("DID_RENEW", transactionId="1001")
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)

        assert event.kind == EventKind.RENEWED
        assert event.original_transaction_id == "1000"
        assert event.transaction_id == "1001"

    @pytest.mark.parametrize("notification_type,kind", [
        ("EXPIRED", EventKind.EXPIRED),
        ("DID_FAIL_TO_RENEW", EventKind.EXPIRED),
        ("GRACE_PERIOD", EventKind.EXPIRED),
        ("REFUND", EventKind.REFUNDED),
        ("REVOKE", EventKind.REFUNDED),
        ("PRICE_INCREASE", EventKind.UNKNOWN),
    ])
    def test_vocabulary(self, notification_type, kind):
        event = normalize_event(Provider.STORE_A, store_a_payload(notification_type), RECEIVED_AT)
        assert event.kind == kind

    def test_fields_are_extracted(self):
        payload = store_a_payload(
            "INITIAL_BUY",
            expiresDate=1770724800000,
            offerType=1,
            appAccountToken="user-42",
        )
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)

        assert event.platform == Platform.STORE_A
        assert event.product_id == "monthly_subscription"
        assert event.occurred_at == datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
        assert event.expires_at == datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
        assert event.is_trial is True
        assert event.app_user_id == "user-42"
        assert event.notification_type == "INITIAL_BUY"
        assert event.raw_payload == payload

    def test_missing_original_falls_back_to_transaction(self):
        payload = store_a_payload("INITIAL_BUY")
        del payload["data"]["transactionInfo"]["originalTransactionId"]
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)

        assert event.original_transaction_id == "1000"
        assert event.kind == EventKind.PURCHASED

    def test_signed_transaction_info_claims_are_read(self):
        claims = {
            "originalTransactionId": "2000",
            "transactionId": "2001",
            "productId": "yearly_subscription",
        }
        payload = {
            "notificationType": "DID_RENEW",
            "data": {"signedTransactionInfo": jwt.encode(claims, "store-key", algorithm="HS256")},
            "signedPayload": "opaque",
        }
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)

        assert event.kind == EventKind.RENEWED
        assert event.original_transaction_id == "2000"
        assert event.product_id == "yearly_subscription"
        # No timestamp in the payload
        assert event.occurred_at == RECEIVED_AT

    def test_missing_product_is_unknown(self):
        payload = store_a_payload("INITIAL_BUY")
        del payload["data"]["transactionInfo"]["productId"]
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)
        assert event.kind == EventKind.UNKNOWN

    def test_missing_both_transaction_ids_is_unknown(self):
        payload = store_a_payload("REFUND")
        del payload["data"]["transactionInfo"]["originalTransactionId"]
        del payload["data"]["transactionInfo"]["transactionId"]
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)
        assert event.kind == EventKind.UNKNOWN


class TestStoreB:
    """Store B message types and notification codes."""

    @pytest.mark.parametrize("message_type,kind", [
        ("SUBSCRIPTION_PURCHASED", EventKind.PURCHASED),
        ("SUBSCRIPTION_RENEWED", EventKind.RENEWED),
        ("SUBSCRIPTION_EXPIRED", EventKind.EXPIRED),
        ("SUBSCRIPTION_CANCELED", EventKind.EXPIRED),
        ("SUBSCRIPTION_REVOKED", EventKind.REFUNDED),
        ("SUBSCRIPTION_PAUSED", EventKind.UNKNOWN),
    ])
    def test_vocabulary(self, message_type, kind):
        event = normalize_event(Provider.STORE_B, store_b_payload(message_type), RECEIVED_AT)
        assert event.kind == kind

    def test_purchase_token_is_lineage(self):
        event = normalize_event(
            Provider.STORE_B, store_b_payload("SUBSCRIPTION_RENEWED"), RECEIVED_AT
        )
        assert event.platform == Platform.STORE_B
        assert event.original_transaction_id == "token-1"
        assert event.transaction_id == "GPA.1"
        assert event.product_id == "yearly_subscription"

    def test_missing_order_id_uses_purchase_token(self):
        payload = store_b_payload("SUBSCRIPTION_PURCHASED")
        del payload["data"]["subscriptionNotification"]["orderId"]
        event = normalize_event(Provider.STORE_B, payload, RECEIVED_AT)

        assert event.transaction_id == "token-1"
        assert event.original_transaction_id == "token-1"

    @pytest.mark.parametrize("code,kind", [
        (4, EventKind.PURCHASED),
        (2, EventKind.RENEWED),
        (13, EventKind.EXPIRED),
        (12, EventKind.REFUNDED),
        (5, EventKind.UNKNOWN),
    ])
    def test_production_notification_codes(self, code, kind):
        payload = {
            "version": "1.0",
            "packageName": "com.example.app",
            "eventTimeMillis": "1768046400000",
            "subscriptionNotification": {
                "version": "1.0",
                "notificationType": code,
                "purchaseToken": "token-9",
                "subscriptionId": "monthly_subscription",
            },
        }
        event = normalize_event(Provider.STORE_B, payload, RECEIVED_AT)

        assert event.kind == kind
        assert event.occurred_at == datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

    def test_one_time_purchase(self):
        payload = {
            "oneTimeProductNotification": {
                "notificationType": 1,
                "purchaseToken": "token-lt",
                "sku": "lifetime_subscription",
            },
        }
        event = normalize_event(Provider.STORE_B, payload, RECEIVED_AT)

        assert event.kind == EventKind.PURCHASED
        assert event.product_id == "lifetime_subscription"


class TestNeverRaises:
    """Garbage in, unknown out."""

    @pytest.mark.parametrize("payload", [None, [], "text", 42, {}, {"data": "x"}])
    def test_unusable_payloads(self, payload):
        for provider in Provider:
            event = normalize_event(provider, payload, RECEIVED_AT)
            assert event.kind == EventKind.UNKNOWN
            assert event.occurred_at == RECEIVED_AT

    def test_bad_signed_transaction_info(self):
        payload = {
            "notificationType": "DID_RENEW",
            "data": {"signedTransactionInfo": "not.a.jws"},
            "signedPayload": "opaque",
        }
        event = normalize_event(Provider.STORE_A, payload, RECEIVED_AT)
        assert event.kind == EventKind.UNKNOWN
