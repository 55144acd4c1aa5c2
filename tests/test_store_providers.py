"""
Store Provider Tests
====================

Provider detection and per-provider signature lookup.
"""

import hashlib
import hmac

import pytest

from app.core.errors import SignatureInvalidError, UnknownProviderError
from app.core.signatures import SignatureVerifier
from app.models.subscription import Provider
from app.services.store_providers import PROVIDERS, detect_provider, resolve_provider

STORE_A_BODY = {
    "notificationType": "DID_RENEW",
    "data": {"transactionInfo": {}},
    "signedPayload": "opaque",
}
STORE_B_BODY = {"subscriptionNotification": {"notificationType": 2}}


class TestDetectProvider:
    """Headers first, then payload shape."""

    def test_store_a_signature_header(self):
        store = detect_provider({"X-StoreA-Signature": "sha256=00"}, {})
        assert store.provider == Provider.STORE_A

    def test_store_a_verification_header(self):
        store = detect_provider({"x-apple-verification-id": "abc"}, None)
        assert store.provider == Provider.STORE_A

    def test_store_b_signature_header(self):
        store = detect_provider({"x-goog-signature": "token"}, {})
        assert store.provider == Provider.STORE_B

    def test_headers_win_over_body(self):
        store = detect_provider({"x-storeb-signature": "token"}, STORE_A_BODY)
        assert store.provider == Provider.STORE_B

    def test_store_a_body_shape(self):
        assert detect_provider({}, STORE_A_BODY).provider == Provider.STORE_A

    def test_store_b_body_shapes(self):
        assert detect_provider({}, STORE_B_BODY).provider == Provider.STORE_B
        assert detect_provider(
            {}, {"oneTimeProductNotification": {"notificationType": 1}}
        ).provider == Provider.STORE_B
        assert detect_provider(
            {},
            {"messageType": "SUBSCRIPTION_RENEWED", "data": {"subscriptionNotification": {"a": 1}}},
        ).provider == Provider.STORE_B

    def test_incomplete_store_a_shape_is_unknown(self):
        body = {"notificationType": "DID_RENEW", "data": {"x": 1}}
        assert detect_provider({}, body) is None

    def test_unknown_shapes(self):
        for body in ({}, {"event": {"type": "RENEWAL"}}, [], "text", None):
            assert detect_provider({"content-type": "application/json"}, body) is None


class TestSignatureHeaders:
    """Each provider reads its own header, case-insensitively."""

    def test_store_a_signature_from(self):
        store = PROVIDERS[Provider.STORE_A]
        assert store.signature_from({"X-Apple-Signature": "sha256=ab"}) == "sha256=ab"
        assert store.signature_from({"x-goog-signature": "t"}) is None

    def test_store_b_signature_from(self):
        store = PROVIDERS[Provider.STORE_B]
        assert store.signature_from({"X-StoreB-Signature": "t"}) == "t"
        assert store.signature_from({}) is None


class TestResolveAndAuthenticate:
    """Raising variants used by the ingress endpoint."""

    def test_resolve_unknown_raises(self):
        with pytest.raises(UnknownProviderError):
            resolve_provider({}, {"event": {"type": "RENEWAL"}})

    def test_resolve_known(self):
        assert resolve_provider({}, STORE_A_BODY).provider == Provider.STORE_A

    def test_authenticate(self):
        verifier = SignatureVerifier({Provider.STORE_A: "secret"})
        body = b'{"notificationType":"DID_RENEW"}'
        digest = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        store = PROVIDERS[Provider.STORE_A]

        store.authenticate(body, {"X-StoreA-Signature": f"sha256={digest}"}, verifier)

        with pytest.raises(SignatureInvalidError):
            store.authenticate(body + b" ", {"X-StoreA-Signature": f"sha256={digest}"}, verifier)
        with pytest.raises(SignatureInvalidError):
            store.authenticate(body, {}, verifier)
