"""
Lightning backend abstraction for the Lightning Address service.

Supports:
- mock: Simulated invoices for development (no real Lightning node)
- lnbits: LNbits API for invoice creation and payment detection
- lnd: LND REST API, with the streaming per-invoice subscription
"""

import base64
import json
import logging
import queue
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator, Optional

import requests

from errors import BackendUnavailable, InvoiceRejected, SubscriptionError

logger = logging.getLogger(__name__)

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


@dataclass(frozen=True)
class InvoiceUpdate:
    """One notification from a backend's per-invoice feed."""

    invoice_id: str
    is_confirmed: bool = False
    is_canceled: bool = False
    settled_at: Optional[int] = None
    preimage: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


class LightningBackend(ABC):
    """Abstract interface for the Lightning operations this service needs."""

    name = "abstract"

    @abstractmethod
    def create_invoice(self, amount_msats: int, description_hash: bytes) -> dict:
        """Create an invoice committing to description_hash.

        Returns {invoice: str, payment_hash: str}. Raises BackendUnavailable
        or InvoiceRejected.
        """

    @abstractmethod
    def subscribe_invoice(self, payment_hash: str, timeout: Optional[float] = None) -> Iterator[InvoiceUpdate]:
        """Yield updates for one invoice until it settles, the feed ends or timeout elapses.

        May yield several non-terminal updates, and may repeat the settled one.
        Raises SubscriptionError when the feed breaks.
        """


def _deadline(timeout: Optional[float]) -> Optional[float]:
    return time.monotonic() + timeout if timeout else None


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def mock_bolt11(amount_msats: int) -> str:
    """Build a BOLT11-shaped (not decodable) mainnet invoice string."""
    if amount_msats % 100 == 0:
        amount = f"{amount_msats // 100}n"
    else:
        amount = f"{amount_msats * 10}p"
    data = "".join(secrets.choice(BECH32_CHARSET) for _ in range(180))
    return f"lnbc{amount}1{data}"


class MockLightningBackend(LightningBackend):
    """
    Mock Lightning backend for development and testing.

    Invoices are stored in memory. Use simulate_payment() (exposed as the
    /api/simulate-payment endpoint) to confirm an invoice; watchers
    subscribed to it receive the update.
    """

    name = "mock"

    def __init__(self):
        self._invoices: dict[str, dict] = {}
        self._paid: set[str] = set()
        self._feeds: dict[str, queue.Queue] = {}
        self._lock = threading.Lock()

    def create_invoice(self, amount_msats: int, description_hash: bytes) -> dict:
        payment_hash = secrets.token_hex(32)
        invoice = mock_bolt11(amount_msats)
        with self._lock:
            self._invoices[payment_hash] = {
                "invoice": invoice,
                "amount_msats": amount_msats,
                "description_hash": description_hash.hex(),
            }
            self._feeds[payment_hash] = queue.Queue()
        return {"invoice": invoice, "payment_hash": payment_hash}

    def subscribe_invoice(self, payment_hash: str, timeout: Optional[float] = None) -> Iterator[InvoiceUpdate]:
        with self._lock:
            if payment_hash not in self._invoices:
                raise SubscriptionError(f"Unknown invoice {payment_hash}")
            feed = self._feeds[payment_hash]
            paid = payment_hash in self._paid
        # Current state first, like LND's subscription
        yield InvoiceUpdate(payment_hash, is_confirmed=paid)
        deadline = _deadline(timeout)
        while True:
            remaining = _remaining(deadline)
            if remaining == 0:
                return
            try:
                update = feed.get(timeout=remaining)
            except queue.Empty:
                continue
            yield update

    def simulate_payment(self, payment_hash: str) -> bool:
        """Mark an invoice as paid (for testing)."""
        with self._lock:
            if payment_hash not in self._invoices:
                return False
            self._paid.add(payment_hash)
            feed = self._feeds[payment_hash]
        feed.put(InvoiceUpdate(
            payment_hash,
            is_confirmed=True,
            settled_at=int(time.time()),
            preimage=secrets.token_hex(32),
        ))
        return True

    def pending_invoices(self) -> list:
        with self._lock:
            return [
                {"invoice_id": ph, "amount_msats": inv["amount_msats"]}
                for ph, inv in self._invoices.items()
                if ph not in self._paid
            ]


def _raise_for_backend(response: requests.Response, action: str) -> None:
    if response.status_code >= 500:
        raise BackendUnavailable(f"{action}: backend returned {response.status_code}")
    if response.status_code >= 400:
        raise InvoiceRejected(f"{action}: {response.status_code} {response.text[:200]}")


class LNbitsLightningBackend(LightningBackend):
    """LNbits API backend. Settlement is detected by polling the payment."""

    name = "lnbits"

    def __init__(self, base_url: str, invoice_key: str, poll_interval: float = 2.0,
                 session: Optional[requests.Session] = None):
        if not invoice_key:
            raise ValueError("LNBITS_INVOICE_KEY required when using lnbits backend")
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.session.headers.update({"X-Api-Key": invoice_key})

    def create_invoice(self, amount_msats: int, description_hash: bytes) -> dict:
        if amount_msats % 1000:
            raise InvoiceRejected("LNbits only issues whole-satoshi invoices")
        payload = {
            "out": False,
            "amount": amount_msats // 1000,
            "unit": "sat",
            "memo": "Lightning Address payment",
            "description_hash": description_hash.hex(),
        }
        try:
            r = self.session.post(f"{self.base_url}/api/v1/payments", json=payload, timeout=30)
        except requests.exceptions.RequestException as e:
            raise BackendUnavailable(f"LNbits unreachable: {e}") from e
        _raise_for_backend(r, "LNbits invoice creation")
        data = r.json()
        return {
            "invoice": data.get("payment_request") or data.get("bolt11"),
            "payment_hash": data.get("payment_hash"),
        }

    def subscribe_invoice(self, payment_hash: str, timeout: Optional[float] = None) -> Iterator[InvoiceUpdate]:
        deadline = _deadline(timeout)
        while True:
            try:
                r = self.session.get(f"{self.base_url}/api/v1/payments/{payment_hash}", timeout=10)
                _raise_for_backend(r, "LNbits payment lookup")
                data = r.json()
            except (requests.exceptions.RequestException, ValueError, InvoiceRejected, BackendUnavailable) as e:
                raise SubscriptionError(f"LNbits poll failed for {payment_hash}: {e}") from e
            paid = bool(data.get("paid", False))
            details = data.get("details") or {}
            yield InvoiceUpdate(
                payment_hash,
                is_confirmed=paid,
                preimage=data.get("preimage") or details.get("preimage"),
                raw=data,
            )
            if paid:
                return
            remaining = _remaining(deadline)
            if remaining == 0:
                return
            time.sleep(self.poll_interval if remaining is None else min(self.poll_interval, remaining))


class LndRestLightningBackend(LightningBackend):
    """LND REST backend (/v1/invoices and /v2/invoices/subscribe)."""

    name = "lnd"

    def __init__(self, rest_url: str, macaroon_hex: str, tls_cert_path: str = "",
                 invoice_expiry: int = 3600, session: Optional[requests.Session] = None):
        if not rest_url or not macaroon_hex:
            raise ValueError("LND_REST_URL and a macaroon are required when using lnd backend")
        self.base_url = rest_url.rstrip("/")
        self.invoice_expiry = invoice_expiry
        self.session = session or requests.Session()
        self.session.headers.update({"Grpc-Metadata-macaroon": macaroon_hex})
        self.session.verify = tls_cert_path or True

    def create_invoice(self, amount_msats: int, description_hash: bytes) -> dict:
        payload = {
            "value_msat": str(amount_msats),
            "description_hash": base64.b64encode(description_hash).decode(),
            "expiry": str(self.invoice_expiry),
        }
        try:
            r = self.session.post(f"{self.base_url}/v1/invoices", json=payload, timeout=30)
        except requests.exceptions.RequestException as e:
            raise BackendUnavailable(f"LND unreachable: {e}") from e
        _raise_for_backend(r, "LND invoice creation")
        data = r.json()
        r_hash = data.get("r_hash")
        return {
            "invoice": data.get("payment_request"),
            "payment_hash": base64.b64decode(r_hash).hex() if r_hash else None,
        }

    def subscribe_invoice(self, payment_hash: str, timeout: Optional[float] = None) -> Iterator[InvoiceUpdate]:
        r_hash = base64.urlsafe_b64encode(bytes.fromhex(payment_hash)).decode()
        deadline = _deadline(timeout)
        try:
            with self.session.get(
                f"{self.base_url}/v2/invoices/subscribe/{r_hash}",
                stream=True,
                timeout=(10, timeout or None),
            ) as r:
                _raise_for_backend(r, "LND invoice subscription")
                for line in r.iter_lines():
                    if not line:
                        continue
                    message = json.loads(line)
                    if "error" in message:
                        raise SubscriptionError(f"LND subscription error: {message['error']}")
                    yield self._parse_update(payment_hash, message.get("result", message))
                    if _remaining(deadline) == 0:
                        return
        except requests.exceptions.RequestException as e:
            if _remaining(deadline) == 0:
                return
            raise SubscriptionError(f"LND subscription for {payment_hash} broke: {e}") from e
        except (ValueError, InvoiceRejected, BackendUnavailable) as e:
            raise SubscriptionError(f"LND subscription for {payment_hash} failed: {e}") from e

    @staticmethod
    def _parse_update(payment_hash: str, result: dict) -> InvoiceUpdate:
        state = result.get("state", "OPEN")
        preimage = result.get("r_preimage")
        return InvoiceUpdate(
            payment_hash,
            is_confirmed=state == "SETTLED",
            is_canceled=state == "CANCELED",
            settled_at=int(result["settle_date"]) if result.get("settle_date") not in (None, "0") else None,
            preimage=base64.b64decode(preimage).hex() if preimage else None,
            raw=result,
        )


def build_lightning_backend(settings) -> LightningBackend:
    """Construct the backend named by settings.lightning_backend."""
    if settings.lightning_backend == "lnbits":
        return LNbitsLightningBackend(
            settings.lnbits_url,
            settings.lnbits_invoice_key,
            poll_interval=settings.lnbits_poll_interval,
        )
    if settings.lightning_backend == "lnd":
        return LndRestLightningBackend(
            settings.lnd_rest_url,
            settings.lnd_macaroon_hex,
            tls_cert_path=settings.lnd_tls_cert_path,
            invoice_expiry=settings.lnd_invoice_expiry,
        )
    return MockLightningBackend()
