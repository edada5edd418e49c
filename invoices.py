"""
Invoice creation with a bound description hash.

The caller always computes the description hash: the SHA-256 of the raw zap
request when one was supplied, otherwise of the LNURL metadata string.
"""

import hashlib
import logging
from dataclasses import dataclass

from errors import BackendError, InvalidAmount
from lightning import LightningBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRequest:
    id: str
    bolt11: str
    amount_msat: int
    description_hash: bytes


def metadata_description_hash(metadata: str) -> bytes:
    """Description hash for a plain (non-zap) LNURL-pay invoice (LUD-06)."""
    return hashlib.sha256(metadata.encode("utf-8")).digest()


class InvoiceFactory:
    def __init__(self, backend: LightningBackend):
        self.backend = backend

    def create(self, amount_msat: int, description_hash: bytes) -> PaymentRequest:
        """Request an invoice from the backend and normalize the response.

        Raises InvalidAmount for non-integer or non-positive amounts,
        BackendUnavailable / InvoiceRejected from the backend, and
        BackendError when the backend answers without an invoice.
        """
        if isinstance(amount_msat, bool) or not isinstance(amount_msat, int):
            raise InvalidAmount("Amount must be an integer number of millisats")
        if amount_msat <= 0:
            raise InvalidAmount("Amount must be positive")
        if not isinstance(description_hash, bytes) or len(description_hash) != 32:
            raise ValueError("description_hash must be a 32-byte digest")

        result = self.backend.create_invoice(amount_msat, description_hash)

        bolt11 = result.get("invoice") if result else None
        payment_hash = result.get("payment_hash") if result else None
        if not bolt11 or not payment_hash:
            logger.error("Invalid invoice response from %s backend: %s", self.backend.name, result)
            raise BackendError("Invalid invoice response")

        logger.info("Invoice %s created for %d msats", payment_hash[:16], amount_msat)
        return PaymentRequest(
            id=payment_hash,
            bolt11=bolt11,
            amount_msat=amount_msat,
            description_hash=description_hash,
        )
