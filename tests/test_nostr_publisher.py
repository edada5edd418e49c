"""Tests for first-success-wins relay publishing."""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest
import websocket

from errors import AllRelaysFailed, RelayError
from nostr_publisher import RelayPublisher, send_event_to_relay

EVENT = {"id": "ab" * 32, "pubkey": "cd" * 32, "kind": 9735, "tags": [], "content": "", "sig": "ef" * 64}


class FakeTransport:
    """Per-relay scripted behaviour: ("ok" | "fail", delay_seconds)."""

    def __init__(self, behaviour):
        self.behaviour = behaviour
        self.finished = {}
        self.lock = threading.Lock()
        self.all_done = threading.Event()

    def __call__(self, url, event):
        outcome, delay = self.behaviour[url]
        time.sleep(delay)
        with self.lock:
            self.finished[url] = outcome
            if len(self.finished) == len(self.behaviour):
                self.all_done.set()
        if outcome == "fail":
            raise RelayError(url, "connection refused")


def test_first_success_wins_after_fast_failures():
    transport = FakeTransport({
        "wss://a": ("fail", 0.0),
        "wss://b": ("fail", 0.0),
        "wss://c": ("ok", 0.2),
    })
    publisher = RelayPublisher(transport=transport)

    started = time.monotonic()
    winner = publisher.publish(["wss://a", "wss://b", "wss://c"], EVENT)
    elapsed = time.monotonic() - started

    assert winner == "wss://c"
    assert elapsed < 0.6


def test_latency_is_bounded_by_fastest_success_not_the_sum():
    transport = FakeTransport({
        "wss://slow-1": ("ok", 1.0),
        "wss://fast": ("ok", 0.1),
        "wss://slow-2": ("fail", 1.0),
    })
    publisher = RelayPublisher(transport=transport)

    started = time.monotonic()
    winner = publisher.publish(["wss://slow-1", "wss://fast", "wss://slow-2"], EVENT)
    elapsed = time.monotonic() - started

    assert winner == "wss://fast"
    assert elapsed < 0.8
    # the losers are not cancelled: they run to completion in the background
    assert transport.all_done.wait(5)
    assert transport.finished == {"wss://slow-1": "ok", "wss://fast": "ok", "wss://slow-2": "fail"}


def test_all_relays_failing_raises():
    transport = FakeTransport({"wss://a": ("fail", 0.0), "wss://b": ("fail", 0.05)})
    publisher = RelayPublisher(transport=transport)

    with pytest.raises(AllRelaysFailed) as exc:
        publisher.publish(["wss://a", "wss://b"], EVENT)

    assert set(exc.value.errors) == {"wss://a", "wss://b"}
    assert exc.value.errors["wss://a"] == "connection refused"


def test_unexpected_transport_exception_counts_as_failure():
    def transport(url, event):
        raise OSError("network unreachable")

    with pytest.raises(AllRelaysFailed) as exc:
        RelayPublisher(transport=transport).publish(["wss://a"], EVENT)
    assert "network unreachable" in exc.value.errors["wss://a"]


def test_empty_relay_set_fails():
    with pytest.raises(AllRelaysFailed):
        RelayPublisher(transport=MagicMock()).publish([], EVENT)


def test_duplicate_relays_attempted_once():
    transport = MagicMock()
    RelayPublisher(transport=transport).publish(["wss://a", "wss://a"], EVENT)
    transport.assert_called_once_with("wss://a", EVENT)


def test_hung_relays_do_not_delay_a_concurrent_publish():
    hung = {f"wss://hung-{i}": ("ok", 2.0) for i in range(32)}
    transport = FakeTransport({**hung, "wss://fast": ("ok", 0.0)})
    publisher = RelayPublisher(transport=transport)

    background = threading.Thread(target=publisher.publish, args=(list(hung), EVENT), daemon=True)
    background.start()
    time.sleep(0.1)

    started = time.monotonic()
    assert publisher.publish(["wss://fast"], EVENT) == "wss://fast"
    assert time.monotonic() - started < 0.5


def test_every_relay_attempt_starts_at_once():
    relays = [f"wss://relay-{i}.example" for i in range(40)]
    barrier = threading.Barrier(len(relays), timeout=5)

    def transport(url, event):
        barrier.wait()

    assert RelayPublisher(transport=transport).publish(relays, EVENT) in relays


# -- websocket transport ---------------------------------------------------------


def _fake_ws(monkeypatch, replies):
    ws = MagicMock()
    ws.recv.side_effect = [json.dumps(r) if not isinstance(r, Exception) else r for r in replies]
    monkeypatch.setattr(websocket, "create_connection", MagicMock(return_value=ws))
    return ws


def test_send_event_waits_for_matching_ok(monkeypatch):
    ws = _fake_ws(monkeypatch, [
        ["NOTICE", "welcome"],
        ["OK", "00" * 32, True, ""],
        ["OK", EVENT["id"], True, ""],
    ])

    send_event_to_relay("wss://relay.example", EVENT, timeout=1)

    sent = json.loads(ws.send.call_args.args[0])
    assert sent == ["EVENT", EVENT]
    ws.close.assert_called_once()


def test_send_event_rejected(monkeypatch):
    _fake_ws(monkeypatch, [["OK", EVENT["id"], False, "blocked: spam"]])
    with pytest.raises(RelayError) as exc:
        send_event_to_relay("wss://relay.example", EVENT, timeout=1)
    assert "blocked: spam" in str(exc.value)


def test_send_event_timeout(monkeypatch):
    _fake_ws(monkeypatch, [websocket.WebSocketTimeoutException("timed out")])
    with pytest.raises(RelayError) as exc:
        send_event_to_relay("wss://relay.example", EVENT, timeout=1)
    assert "timed out" in str(exc.value)


def test_send_event_connection_refused(monkeypatch):
    monkeypatch.setattr(websocket, "create_connection", MagicMock(side_effect=ConnectionRefusedError()))
    with pytest.raises(RelayError):
        send_event_to_relay("wss://relay.example", EVENT, timeout=1)
