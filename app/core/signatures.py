"""
Webhook Signatures
==================

Authenticity checks for store webhook bodies.

Store A signs the raw body with HMAC-SHA256 and sends either
``sha256=<hex>`` or the base64 digest. Store B sends a compact HS256
token whose claims are the JSON content of the body.

Verification never raises: malformed input, missing pieces and
cryptographic failures all come back as ``False``.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from typing import Mapping, Optional, Union

from jose import JWTError, jwt

from app.models.subscription import Provider

logger = logging.getLogger(__name__)

HMAC_HEX_PREFIX = "sha256="
SIGNED_TOKEN_ALGORITHMS = ["HS256"]

# Claims a signer may add on top of the body content
_REGISTERED_CLAIMS = frozenset({"iat", "exp", "nbf", "iss", "aud", "jti", "sub"})


def _to_bytes(raw_body: Union[bytes, str]) -> bytes:
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return raw_body


def verify_hmac_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """
    Check an HMAC-SHA256 signature over the exact body bytes.

    Both encodings are compared with ``hmac.compare_digest`` on the
    decoded digest so the comparison time does not depend on how many
    leading bytes match.
    """
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()

    if signature.startswith(HMAC_HEX_PREFIX):
        try:
            provided = bytes.fromhex(signature[len(HMAC_HEX_PREFIX):])
        except ValueError:
            return False
    else:
        try:
            provided = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False

    return hmac.compare_digest(provided, expected)


def verify_signed_token(raw_body: bytes, token: str, secret: str) -> bool:
    """
    Check a signed token against the body it claims to describe.

    The token must verify under ``secret`` and its claims, minus the
    registered JWT claims, must equal the parsed body.
    """
    if token.count(".") != 2:
        logger.warning("Signed token is not a compact JWS")
        return False

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=SIGNED_TOKEN_ALGORITHMS,
            options={"verify_aud": False, "verify_sub": False},
        )
    except JWTError as exc:
        logger.warning("Signed token verification failed: %s", exc)
        return False

    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return False

    if not isinstance(body, dict):
        return False

    content = {k: v for k, v in claims.items() if k not in _REGISTERED_CLAIMS}
    return content == body


def verify_webhook_signature(
    raw_body: Union[bytes, str, None],
    signature_header: Optional[str],
    provider: Provider,
    secret: Optional[str],
) -> bool:
    """
    Verify a webhook body for ``provider``.

    Args:
        raw_body: Body exactly as received, before any JSON parsing
        signature_header: Value of the provider's signature header
        provider: Store that allegedly sent the body
        secret: Signing secret configured for that store

    Returns:
        True only if the signature is well-formed and valid.
    """
    if not raw_body or not signature_header or not secret:
        logger.warning(
            "Missing body, signature or secret for %s webhook verification",
            getattr(provider, "value", provider),
        )
        return False

    try:
        body = _to_bytes(raw_body)
        if provider == Provider.STORE_A:
            return verify_hmac_signature(body, signature_header.strip(), secret)
        if provider == Provider.STORE_B:
            return verify_signed_token(body, signature_header.strip(), secret)
    except Exception:
        logger.exception("Error verifying webhook signature")
        return False

    logger.warning("No signature scheme for provider %r", provider)
    return False


class SignatureVerifier:
    """
    Verifier bound to the per-provider secrets resolved at startup.

    Usage:
        verifier = SignatureVerifier(settings.webhook_secrets)
        verifier.verify(raw_body, header_value, Provider.STORE_A)
    """

    def __init__(self, secrets: Mapping[Provider, str]):
        self._secrets = dict(secrets)

    def secret_for(self, provider: Provider) -> str:
        return self._secrets.get(provider, "")

    def verify(
        self,
        raw_body: Union[bytes, str, None],
        signature_header: Optional[str],
        provider: Provider,
        secret: Optional[str] = None,
    ) -> bool:
        if secret is None:
            secret = self.secret_for(provider)
        return verify_webhook_signature(raw_body, signature_header, provider, secret)
