"""
Settlement watcher.

Subscribes to the backend's per-invoice feed on a daemon thread and fires a
callback exactly once when the invoice is first seen confirmed.

A watch is WATCHING until it becomes CONFIRMED or ABANDONED (subscription
error, canceled invoice, feed ended, wait bound elapsed, shutdown). Both are
terminal. Watches are not persisted: confirmations that happen while the
process is down never produce a callback.
"""

import enum
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional

from errors import BackendError
from lightning import InvoiceUpdate, LightningBackend

logger = logging.getLogger(__name__)


class WatchState(enum.Enum):
    WATCHING = "watching"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


class InvoiceWatch:
    """State of one watched invoice. Transitions are idempotent."""

    def __init__(self, invoice_id: str, on_confirmed: Callable[[InvoiceUpdate], None]):
        self.invoice_id = invoice_id
        self.on_confirmed = on_confirmed
        self.state = WatchState.WATCHING
        self.final_update: Optional[InvoiceUpdate] = None
        self.reason: Optional[str] = None
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def is_terminal(self) -> bool:
        return self.state is not WatchState.WATCHING

    def handle(self, update: InvoiceUpdate) -> bool:
        """Feed one update. Returns True only for the update that confirms.

        The callback runs in the caller's thread before this returns, so the
        next update is not considered until the receipt pipeline is done.
        """
        if not update.is_confirmed:
            if update.is_canceled:
                self.abandon("invoice canceled")
            return False
        with self._lock:
            if self.state is not WatchState.WATCHING:
                return False
            self.state = WatchState.CONFIRMED
            self.final_update = update
        logger.info("Invoice %s confirmed", self.invoice_id[:16])
        try:
            self.on_confirmed(update)
        except Exception:
            logger.exception("Settlement callback failed for invoice %s", self.invoice_id[:16])
        finally:
            self._done.set()
        return True

    def abandon(self, reason: str) -> bool:
        with self._lock:
            if self.state is not WatchState.WATCHING:
                return False
            self.state = WatchState.ABANDONED
            self.reason = reason
        self._done.set()
        logger.warning("Stopped watching invoice %s: %s", self.invoice_id[:16], reason)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the watch is terminal (and any callback finished)."""
        return self._done.wait(timeout)


class SettlementWatcher:
    # Finished watches kept so a repeated register() cannot confirm twice
    FINISHED_HISTORY = 4096

    def __init__(self, backend: LightningBackend, max_wait_seconds: float = 0):
        self.backend = backend
        self.max_wait_seconds = max_wait_seconds or None
        self._watches: Dict[str, InvoiceWatch] = {}
        self._finished: "OrderedDict[str, InvoiceWatch]" = OrderedDict()
        self._lock = threading.Lock()
        self._closed = False

    def register(self, invoice_id: str, on_confirmed: Callable[[InvoiceUpdate], None]) -> InvoiceWatch:
        """Start watching invoice_id; returns the existing watch if one is live or recently finished."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Settlement watcher is shut down")
            existing = self._watches.get(invoice_id) or self._finished.get(invoice_id)
            if existing is not None:
                return existing
            watch = InvoiceWatch(invoice_id, on_confirmed)
            self._watches[invoice_id] = watch

        t = threading.Thread(
            target=self._run,
            args=(watch,),
            name=f"settlement-{invoice_id[:8]}",
            daemon=True,
        )
        t.start()
        logger.info("Watching invoice %s for settlement", invoice_id[:16])
        return watch

    def _run(self, watch: InvoiceWatch) -> None:
        deadline = time.monotonic() + self.max_wait_seconds if self.max_wait_seconds else None
        try:
            for update in self.backend.subscribe_invoice(watch.invoice_id, timeout=self.max_wait_seconds):
                if watch.is_terminal:
                    break
                watch.handle(update)
                if watch.is_terminal:
                    break
            else:
                if deadline is not None and time.monotonic() >= deadline:
                    watch.abandon(f"not confirmed within {self.max_wait_seconds:g}s")
                else:
                    watch.abandon("subscription ended")
        except BackendError as e:
            watch.abandon(f"subscription error: {e}")
        except Exception as e:
            logger.exception("Unexpected error watching invoice %s", watch.invoice_id[:16])
            watch.abandon(f"unexpected error: {e}")
        finally:
            with self._lock:
                if self._watches.get(watch.invoice_id) is watch:
                    del self._watches[watch.invoice_id]
                self._finished[watch.invoice_id] = watch
                while len(self._finished) > self.FINISHED_HISTORY:
                    self._finished.popitem(last=False)

    def get(self, invoice_id: str) -> Optional[InvoiceWatch]:
        with self._lock:
            return self._watches.get(invoice_id) or self._finished.get(invoice_id)

    def active_count(self) -> int:
        with self._lock:
            return len(self._watches)

    def shutdown(self) -> None:
        """Abandon every live watch. Their threads are daemons and exit on their own."""
        with self._lock:
            self._closed = True
            watches = list(self._watches.values())
        for watch in watches:
            watch.abandon("process shutdown")
        if watches:
            logger.info("Abandoned %d settlement watch(es) on shutdown", len(watches))
