"""
Publish Nostr events to relays.

Every relay attempt runs on its own daemon thread, so a hung relay never
holds up another attempt or another publish. publish() returns
as soon as one relay acknowledges the event; the other attempts are never
cancelled and their outcomes are only logged.
"""

import functools
import json
import logging
import ssl
import threading
import time
from concurrent.futures import Future, as_completed
from typing import Callable, Iterable, Optional

import websocket
from nostr.message_type import ClientMessageType

from errors import AllRelaysFailed, RelayError

logger = logging.getLogger(__name__)


def send_event_to_relay(url: str, event: dict, timeout: float = 10.0, verify_ssl: bool = True) -> None:
    """
    Submit one signed event to one relay and wait for its NIP-01 OK.

    Raises RelayError on connection failure, rejection or timeout.
    """
    deadline = time.monotonic() + timeout
    sslopt = {"cert_reqs": ssl.CERT_REQUIRED if verify_ssl else ssl.CERT_NONE}
    try:
        ws = websocket.create_connection(url, timeout=timeout, sslopt=sslopt)
    except (websocket.WebSocketException, OSError) as e:
        raise RelayError(url, f"connection failed: {e}") from e

    try:
        ws.send(json.dumps([ClientMessageType.EVENT, event]))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RelayError(url, "timed out waiting for OK")
            ws.settimeout(remaining)
            message = json.loads(ws.recv())
            if not isinstance(message, list) or not message:
                continue
            if message[0] == "OK" and len(message) >= 3 and message[1] == event["id"]:
                if message[2] is True:
                    return
                reason = message[3] if len(message) > 3 else ""
                raise RelayError(url, f"rejected: {reason}")
            if message[0] == "NOTICE":
                logger.debug("NOTICE from %s: %s", url, message[1:])
    except websocket.WebSocketTimeoutException as e:
        raise RelayError(url, "timed out waiting for OK") from e
    except (websocket.WebSocketException, OSError, ValueError) as e:
        raise RelayError(url, str(e)) from e
    finally:
        ws.close()


class RelayPublisher:
    def __init__(
        self,
        transport: Optional[Callable[[str, dict], None]] = None,
        timeout: float = 10.0,
        verify_ssl: bool = True,
    ):
        self.transport = transport or functools.partial(
            send_event_to_relay, timeout=timeout, verify_ssl=verify_ssl
        )

    def _start_attempt(self, url: str, event: dict) -> Future:
        """Run one relay attempt on its own daemon thread."""
        future: Future = Future()
        future.set_running_or_notify_cancel()

        def _run():
            try:
                self.transport(url, event)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(None)

        t = threading.Thread(target=_run, daemon=True, name=f"relay-{url}")
        t.start()
        return future

    def publish(self, relays: Iterable[str], event: dict) -> str:
        """
        Broadcast event to every relay concurrently.
        Returns the URL of the first relay that accepted it, or raises
        AllRelaysFailed once every attempt has failed.
        """
        relays = list(dict.fromkeys(relays))
        if not relays:
            raise AllRelaysFailed({})

        event_id = event.get("id", "")
        futures = {}
        for url in relays:
            future = self._start_attempt(url, event)
            future.add_done_callback(functools.partial(_log_outcome, url, event_id))
            futures[future] = url

        errors = {}
        for future in as_completed(futures):
            url = futures[future]
            try:
                future.result()
            except Exception as e:
                errors[url] = e.message if isinstance(e, RelayError) else str(e)
                continue
            pending = sum(1 for f in futures if not f.done())
            if pending:
                logger.debug("Event %s: %d relay attempt(s) still running", event_id[:16], pending)
            return url

        raise AllRelaysFailed(errors)


def _log_outcome(url: str, event_id: str, future: Future) -> None:
    if future.cancelled():
        logger.warning("Relay %s: attempt for event %s was cancelled", url, event_id[:16])
        return
    exc = future.exception()
    if exc is None:
        logger.info("Relay %s accepted event %s", url, event_id[:16])
    else:
        logger.warning("Relay %s failed for event %s: %s", url, event_id[:16], exc)
