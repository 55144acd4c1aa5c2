"""
Store Providers
===============

One object per store that knows how to recognise its webhooks, where
its signature travels and how its payloads normalize. The ingress
endpoint picks a provider through ``detect_provider`` and then talks
to it only through this interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from app.core.errors import SignatureInvalidError, UnknownProviderError
from app.core.signatures import SignatureVerifier
from app.models.subscription import Provider
from app.schemas.subscription import SubscriptionEvent
from app.services.event_normalizer import normalize_event


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class StoreProvider(ABC):
    """Detection, authentication and normalization for one store."""

    provider: Provider
    signature_headers: tuple[str, ...] = ()
    detection_headers: tuple[str, ...] = ()

    def detect_by_headers(self, headers: Mapping[str, str]) -> bool:
        lowered = _lower_keys(headers)
        return any(
            lowered.get(name)
            for name in self.detection_headers + self.signature_headers
        )

    @abstractmethod
    def detect_by_body(self, body: Any) -> bool:
        """Recognise the store from the payload shape alone."""

    def signature_from(self, headers: Mapping[str, str]) -> Optional[str]:
        lowered = _lower_keys(headers)
        for name in self.signature_headers:
            if lowered.get(name):
                return lowered[name]
        return None

    def verify(
        self,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
        verifier: SignatureVerifier,
    ) -> bool:
        return verifier.verify(raw_body, self.signature_from(headers), self.provider)

    def authenticate(
        self,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
        verifier: SignatureVerifier,
    ) -> None:
        """Raise SignatureInvalidError unless the body carries a valid signature."""
        if not self.verify(raw_body, headers, verifier):
            raise SignatureInvalidError(f"Invalid {self.provider.value} webhook signature")

    def normalize(
        self,
        payload: Any,
        received_at: Optional[datetime] = None,
    ) -> SubscriptionEvent:
        return normalize_event(self.provider, payload, received_at)


class StoreAProvider(StoreProvider):
    provider = Provider.STORE_A
    signature_headers = ("x-storea-signature", "x-apple-signature")
    detection_headers = ("x-storea-verification-id", "x-apple-verification-id")

    def detect_by_body(self, body: Any) -> bool:
        return (
            isinstance(body, dict)
            and bool(body.get("notificationType"))
            and bool(body.get("data"))
            and bool(body.get("signedPayload"))
        )


class StoreBProvider(StoreProvider):
    provider = Provider.STORE_B
    signature_headers = ("x-storeb-signature", "x-goog-signature")

    def detect_by_body(self, body: Any) -> bool:
        if not isinstance(body, dict):
            return False
        if body.get("subscriptionNotification") or body.get("oneTimeProductNotification"):
            return True
        data = body.get("data")
        return (
            bool(body.get("messageType"))
            and isinstance(data, dict)
            and bool(data.get("subscriptionNotification"))
        )


PROVIDERS: dict[Provider, StoreProvider] = {
    Provider.STORE_A: StoreAProvider(),
    Provider.STORE_B: StoreBProvider(),
}


def detect_provider(
    headers: Mapping[str, str],
    body: Any,
) -> Optional[StoreProvider]:
    """
    Attribute a webhook to a store.

    Headers are checked first for every store, then the payload shape.
    Returns None when nothing matches.
    """
    for store in PROVIDERS.values():
        if store.detect_by_headers(headers):
            return store
    for store in PROVIDERS.values():
        if store.detect_by_body(body):
            return store
    return None


def resolve_provider(headers: Mapping[str, str], body: Any) -> StoreProvider:
    """
    Like ``detect_provider`` but raises UnknownProviderError when no
    store matches.
    """
    store = detect_provider(headers, body)
    if store is None:
        raise UnknownProviderError("Webhook does not match any store provider")
    return store
