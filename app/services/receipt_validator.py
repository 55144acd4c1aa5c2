"""
Receipt Validator
=================

Boundary to the stores' receipt verification APIs. Verifying receipts
against store sandboxes is not done here; the default validator only
extracts a stable transaction identity from the opaque receipt so the
receipt path and the webhook path agree on lineage:

- store A receipts that are compact JWS transactions yield their
  ``originalTransactionId`` / ``transactionId`` claims;
- store B receipts are purchase tokens, which are also the lineage id
  store B webhooks carry;
- anything else is identified by a digest of the receipt, so
  validating the same receipt twice is a replay.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict

from app.core.errors import ReceiptInvalidError
from app.models.subscription import Platform
from app.utils.helpers import parse_timestamp

logger = logging.getLogger(__name__)


class ValidatedReceipt(BaseModel):
    """Transaction identity extracted from a receipt."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    original_transaction_id: str
    expires_at: Optional[datetime] = None
    is_trial: bool = False


class ReceiptValidator(ABC):
    """Interface for store receipt authentication."""

    @abstractmethod
    async def validate(
        self,
        receipt: str,
        product_id: str,
        platform: Platform,
    ) -> ValidatedReceipt:
        """Raise ReceiptInvalidError when the receipt is not acceptable."""


class LocalReceiptValidator(ReceiptValidator):
    """Derives identity locally without calling the stores."""

    async def validate(
        self,
        receipt: str,
        product_id: str,
        platform: Platform,
    ) -> ValidatedReceipt:
        receipt = receipt.strip()
        if not receipt:
            raise ReceiptInvalidError("Empty receipt")

        if platform == Platform.STORE_A and receipt.count(".") == 2:
            claims = self._claims(receipt)
            transaction_id = claims.get("transactionId")
            if transaction_id:
                claimed_product = claims.get("productId")
                if claimed_product and claimed_product != product_id:
                    raise ReceiptInvalidError("Receipt is for a different product")
                return ValidatedReceipt(
                    transaction_id=str(transaction_id),
                    original_transaction_id=str(
                        claims.get("originalTransactionId") or transaction_id
                    ),
                    expires_at=parse_timestamp(claims.get("expiresDate")),
                    is_trial=claims.get("offerType") == 1,
                )

        if platform == Platform.STORE_B:
            return ValidatedReceipt(
                transaction_id=receipt,
                original_transaction_id=receipt,
            )

        digest = hashlib.sha256(receipt.encode("utf-8")).hexdigest()
        receipt_id = f"receipt:{digest}"
        return ValidatedReceipt(
            transaction_id=receipt_id,
            original_transaction_id=receipt_id,
        )

    @staticmethod
    def _claims(token: str) -> dict:
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            logger.info("Store A receipt is not a signed transaction; using digest")
            return {}
        return claims if isinstance(claims, dict) else {}
