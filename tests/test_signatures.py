"""
Webhook Signature Tests
=======================

HMAC (store A) and signed-token (store B) verification.
"""

import base64
import hashlib
import hmac
import json

from jose import jwt

from app.core.signatures import SignatureVerifier, verify_webhook_signature
from app.models.subscription import Provider

SECRET = "webhook-secret"
BODY = b'{"notificationType":"DID_RENEW","data":{"transactionInfo":{"transactionId":"t2"}}}'


def _hex_signature(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _b64_signature(body: bytes, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class TestStoreAHmac:
    """HMAC-SHA256 over the raw body."""

    def test_hex_signature_verifies(self):
        assert verify_webhook_signature(BODY, _hex_signature(BODY), Provider.STORE_A, SECRET)

    def test_base64_signature_verifies(self):
        assert verify_webhook_signature(BODY, _b64_signature(BODY), Provider.STORE_A, SECRET)

    def test_any_single_bit_flip_fails(self):
        signature = _hex_signature(BODY)
        for index in range(len(BODY)):
            for bit in range(8):
                mutated = bytearray(BODY)
                mutated[index] ^= 1 << bit
                assert not verify_webhook_signature(
                    bytes(mutated), signature, Provider.STORE_A, SECRET
                )

    def test_wrong_secret_fails(self):
        signature = _hex_signature(BODY, "other-secret")
        assert not verify_webhook_signature(BODY, signature, Provider.STORE_A, SECRET)

    def test_malformed_signatures_fail(self):
        for signature in ("sha256=not-hex", "%%%not-base64%%%", "sha256=", "abc"):
            assert not verify_webhook_signature(BODY, signature, Provider.STORE_A, SECRET)

    def test_str_body_is_accepted(self):
        signature = _hex_signature(BODY)
        assert verify_webhook_signature(BODY.decode(), signature, Provider.STORE_A, SECRET)


class TestStoreBSignedToken:
    """HS256 token whose claims are the body content."""

    def test_matching_token_verifies(self):
        payload = json.loads(BODY)
        token = jwt.encode(payload, SECRET, algorithm="HS256")
        assert verify_webhook_signature(BODY, token, Provider.STORE_B, SECRET)

    def test_registered_claims_are_ignored(self):
        payload = json.loads(BODY)
        token = jwt.encode({**payload, "iat": 1718000000}, SECRET, algorithm="HS256")
        assert verify_webhook_signature(BODY, token, Provider.STORE_B, SECRET)

    def test_token_for_different_body_fails(self):
        token = jwt.encode({"notificationType": "REFUND"}, SECRET, algorithm="HS256")
        assert not verify_webhook_signature(BODY, token, Provider.STORE_B, SECRET)

    def test_wrong_secret_fails(self):
        token = jwt.encode(json.loads(BODY), "other-secret", algorithm="HS256")
        assert not verify_webhook_signature(BODY, token, Provider.STORE_B, SECRET)

    def test_structurally_invalid_token_fails(self):
        for token in ("not-a-token", "a.b", "a.b.c", "a.b.c.d"):
            assert not verify_webhook_signature(BODY, token, Provider.STORE_B, SECRET)


class TestMissingInput:
    """Missing pieces are a plain False, never an exception."""

    def test_missing_body_header_or_secret(self):
        signature = _hex_signature(BODY)
        assert not verify_webhook_signature(b"", signature, Provider.STORE_A, SECRET)
        assert not verify_webhook_signature(None, signature, Provider.STORE_A, SECRET)
        assert not verify_webhook_signature(BODY, None, Provider.STORE_A, SECRET)
        assert not verify_webhook_signature(BODY, signature, Provider.STORE_A, "")

    def test_verifier_uses_configured_secret(self):
        verifier = SignatureVerifier({Provider.STORE_A: SECRET})
        assert verifier.verify(BODY, _hex_signature(BODY), Provider.STORE_A)
        # No secret configured for store B
        token = jwt.encode(json.loads(BODY), SECRET, algorithm="HS256")
        assert not verifier.verify(BODY, token, Provider.STORE_B)
