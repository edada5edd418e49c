"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import itertools
import json
import sys
import threading
from pathlib import Path
from typing import Iterator, Optional

import pytest
from nostr.event import Event
from nostr.key import PrivateKey

# Add the project root to sys.path so tests can import modules directly.
_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from config import Settings  # noqa: E402
from errors import AllRelaysFailed  # noqa: E402
from lightning import InvoiceUpdate, LightningBackend  # noqa: E402

FIXED_NOW: int = 1_700_000_000
RECIPIENT_PK: str = "bb" * 32
NOTE_ID: str = "ee" * 32


def signed_event(key: PrivateKey, kind: int = 9734, tags: Optional[list] = None,
                 content: str = "", created_at: int = FIXED_NOW - 60) -> dict:
    ev = Event(
        content=content,
        public_key=key.public_key.hex(),
        created_at=created_at,
        kind=kind,
        tags=tags if tags is not None else [],
    )
    key.sign_event(ev)
    return {
        "id": ev.id,
        "pubkey": ev.public_key,
        "created_at": ev.created_at,
        "kind": ev.kind,
        "tags": ev.tags,
        "content": ev.content,
        "sig": ev.signature,
    }


@pytest.fixture(scope="session")
def service_key() -> PrivateKey:
    return PrivateKey()


@pytest.fixture(scope="session")
def sender_key() -> PrivateKey:
    return PrivateKey()


@pytest.fixture
def make_zap_request(sender_key):
    """Build a signed kind 9734 payload as the raw JSON string a wallet sends."""

    def _make(amount_msats: Optional[int] = 21000, relays: Optional[list] = None,
              p_tags: Optional[list] = None, e_tags: Optional[list] = None,
              kind: int = 9734, content: str = "", key: Optional[PrivateKey] = None) -> str:
        tags: list = []
        if relays is not None:
            tags.append(["relays", *relays])
        if amount_msats is not None:
            tags.append(["amount", str(amount_msats)])
        for p in (p_tags if p_tags is not None else [RECIPIENT_PK]):
            tags.append(["p", p])
        for e in (e_tags or []):
            tags.append(["e", e])
        return json.dumps(signed_event(key or sender_key, kind=kind, tags=tags, content=content))

    return _make


class ScriptedBackend(LightningBackend):
    """Backend whose subscription replays a scripted list of updates."""

    name = "scripted"

    def __init__(self, script: Optional[list] = None, error: Optional[Exception] = None,
                 create_error: Optional[Exception] = None):
        self.script = script or []
        self.error = error
        self.create_error = create_error
        self.created: list = []
        self.subscriptions: list = []
        self._ids = itertools.count(1)
        self.release = threading.Event()
        self.release.set()

    def create_invoice(self, amount_msats: int, description_hash: bytes) -> dict:
        if self.create_error is not None:
            raise self.create_error
        payment_hash = f"{next(self._ids):064x}"
        self.created.append((payment_hash, amount_msats, description_hash))
        return {"invoice": f"lnbc{amount_msats // 100}n1qqqsyqcyq5rqwzqf", "payment_hash": payment_hash}

    def subscribe_invoice(self, payment_hash: str, timeout=None) -> Iterator[InvoiceUpdate]:
        self.subscriptions.append(payment_hash)
        self.release.wait(5)
        for step in self.script:
            if isinstance(step, Exception):
                raise step
            yield InvoiceUpdate(payment_hash, **step)
        if self.error is not None:
            raise self.error


class RecordingPublisher:
    """Stands in for RelayPublisher; records what would be broadcast."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list = []
        self.done = threading.Event()

    def publish(self, relays, event) -> str:
        self.published.append((list(relays), event))
        self.done.set()
        if self.fail:
            raise AllRelaysFailed({url: "connection refused" for url in relays})
        return list(relays)[0]


@pytest.fixture
def settings(service_key) -> Settings:
    return Settings(
        domains=["example.com"],
        nostr_private_key=service_key.hex(),
        nostr_relays=["wss://default-1.example", "wss://default-2.example"],
        settlement_max_wait_seconds=5,
    )
