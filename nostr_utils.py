"""
Nostr utilities for the Lightning Address service.

- Parse and validate Kind 9734 (Zap Request)
- Create Kind 9735 (Zap Receipt)
- Event signing, verification and service key loading
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from nostr.event import Event
from nostr.key import PrivateKey, PublicKey

from errors import ConfigurationError, InvalidSignature, InvalidZapRequest, MalformedPayload
from invoices import PaymentRequest

logger = logging.getLogger(__name__)

ZAP_REQUEST_KIND = 9734
ZAP_RECEIPT_KIND = 9735

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")


@dataclass(frozen=True)
class ZapRequest:
    """A verified Kind 9734 event plus the exact payload it arrived as."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: Tuple[Tuple[str, ...], ...]
    content: str
    sig: str
    raw: str

    def tag_values(self, name: str) -> List[Tuple[str, ...]]:
        return [t[1:] for t in self.tags if t and t[0] == name]

    @property
    def relays(self) -> List[str]:
        """Relay URIs from the first `relays` tag, in order."""
        values = self.tag_values("relays")
        return list(values[0]) if values else []

    @property
    def amount_msat(self) -> Optional[int]:
        values = self.tag_values("amount")
        if not values or not values[0]:
            return None
        try:
            return int(values[0][0])
        except ValueError:
            raise InvalidZapRequest("Zap request amount tag is not an integer")


def _event_fields(event: dict):
    """Check NIP-01 field presence and types, returning them in order."""
    if not isinstance(event, dict):
        raise MalformedPayload("Zap request must be a JSON object")
    try:
        event_id, pubkey, created_at = event["id"], event["pubkey"], event["created_at"]
        kind, tags, content, sig = event["kind"], event["tags"], event["content"], event["sig"]
    except KeyError as e:
        raise MalformedPayload(f"Zap request is missing field {e.args[0]}")

    if not isinstance(event_id, str) or not _HEX64.match(event_id):
        raise MalformedPayload("Zap request id must be 64 lowercase hex characters")
    if not isinstance(pubkey, str) or not _HEX64.match(pubkey):
        raise MalformedPayload("Zap request pubkey must be 64 lowercase hex characters")
    if not isinstance(sig, str) or not _HEX128.match(sig):
        raise MalformedPayload("Zap request sig must be 128 lowercase hex characters")
    for name, value in (("created_at", created_at), ("kind", kind)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedPayload(f"Zap request {name} must be an integer")
    if not isinstance(content, str):
        raise MalformedPayload("Zap request content must be a string")
    if not isinstance(tags, list) or not all(
        isinstance(t, list) and all(isinstance(v, str) for v in t) for t in tags
    ):
        raise MalformedPayload("Zap request tags must be a list of string lists")
    return event_id, pubkey, created_at, kind, tags, content, sig


def verify_event_signature(event: dict) -> bool:
    """Verify Nostr event id and signature (NIP-01)."""
    try:
        computed = Event.compute_id(
            event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]
        )
        if computed != event["id"]:
            return False
        pk = PublicKey(bytes.fromhex(event["pubkey"]))
        return pk.verify_signed_message_hash(computed, event["sig"])
    except Exception as e:
        logger.warning("Signature verification failed: %s", e)
        return False


def validate_zap_request(raw: str, amount_msat: Optional[int] = None) -> Tuple[ZapRequest, bytes]:
    """
    Parse and verify a Kind 9734 Zap Request per NIP-57 Appendix D.

    Returns the request and the description hash, computed over `raw`
    exactly as received.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedPayload("Empty nostr payload")
    try:
        event = json.loads(raw)
    except ValueError as e:
        raise MalformedPayload(f"Nostr payload is not valid JSON: {e}")
    except RecursionError:
        raise MalformedPayload("Nostr payload is nested too deeply")

    event_id, pubkey, created_at, kind, tags, content, sig = _event_fields(event)

    if not verify_event_signature(event):
        raise InvalidSignature()

    if kind != ZAP_REQUEST_KIND:
        raise InvalidZapRequest(f"Expected kind {ZAP_REQUEST_KIND}, got {kind}")

    zap_request = ZapRequest(
        id=event_id,
        pubkey=pubkey,
        created_at=created_at,
        kind=kind,
        tags=tuple(tuple(t) for t in tags),
        content=content,
        sig=sig,
        raw=raw,
    )

    p_tags = zap_request.tag_values("p")
    if len(p_tags) != 1 or not p_tags[0]:
        raise InvalidZapRequest("Zap request must have exactly one p tag")
    if len(zap_request.tag_values("e")) > 1:
        raise InvalidZapRequest("Zap request must have at most one e tag")
    tagged_amount = zap_request.amount_msat
    if tagged_amount is not None and amount_msat is not None and tagged_amount != amount_msat:
        raise InvalidZapRequest("Amount does not match zap request")

    return zap_request, hashlib.sha256(raw.encode("utf-8")).digest()


def relay_set(zap_request: Optional[ZapRequest], default_relays: Iterable[str], max_relays: int = 10) -> List[str]:
    """Relays to publish the receipt to: the request's own, else the defaults."""
    requested = []
    for url in (zap_request.relays if zap_request else []):
        url = url.strip()
        if url.startswith(("wss://", "ws://")) and url not in requested:
            requested.append(url)
    if requested:
        return requested[:max_relays]
    return list(default_relays)[:max_relays]


def build_zap_receipt(
    zap_request: ZapRequest,
    payment_request: PaymentRequest,
    service_key: PrivateKey,
    now: int,
) -> dict:
    """
    Create Kind 9735 Zap Receipt per NIP-57 Appendix E.

    Tags: the request's p/e tags in order, then bolt11, description, P.
    """
    tags = [list(t) for t in zap_request.tags if t and t[0] in ("p", "e") and len(t) >= 2]
    tags.append(["bolt11", payment_request.bolt11])
    tags.append(["description", zap_request.raw])
    tags.append(["P", zap_request.pubkey])

    ev = Event(
        content="",
        public_key=service_key.public_key.hex(),
        created_at=int(now),
        kind=ZAP_RECEIPT_KIND,
        tags=tags,
    )
    service_key.sign_event(ev)
    return {
        "id": ev.id,
        "pubkey": ev.public_key,
        "created_at": ev.created_at,
        "kind": ZAP_RECEIPT_KIND,
        "tags": ev.tags,
        "content": ev.content,
        "sig": ev.signature,
    }


def load_service_key(value: str) -> PrivateKey:
    """Load the service signing key from 64-char hex or an nsec string."""
    value = (value or "").strip()
    if not value:
        raise ConfigurationError("NOSTR_PRIVATE_KEY is required (hex or nsec)")
    try:
        if value.startswith("nsec1"):
            key = PrivateKey.from_nsec(value)
        elif _HEX64.match(value.lower()):
            key = PrivateKey(raw_secret=bytes.fromhex(value))
        else:
            raise ValueError("expected 64 hex characters or nsec1...")
    except Exception as e:
        raise ConfigurationError(f"NOSTR_PRIVATE_KEY is malformed: {e}") from e
    return key
