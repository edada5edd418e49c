#!/usr/bin/env python3
"""
Lightning Address on Lightning + Nostr

Flask application implementing:
- LNURL-pay discovery endpoint (LUD-06 / LUD-16)
- LNURL-pay callback issuing invoices, optionally bound to a NIP-57 zap request
- Kind 9735 zap receipts published to relays once the invoice settles
"""

import functools
import json
import logging
import re
import sys
import time
from dataclasses import dataclass
from typing import Optional

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from nostr.key import PrivateKey

import config
from domains import DomainValidator, normalize_host
from errors import (
    BackendError,
    ConfigurationError,
    InvalidAmount,
    MissingAmount,
    PublishError,
    UnknownDomain,
    UnknownUser,
    ValidationError,
)
from invoices import InvoiceFactory, PaymentRequest, metadata_description_hash
from lightning import InvoiceUpdate, LightningBackend, MockLightningBackend, build_lightning_backend
from nostr_publisher import RelayPublisher
from nostr_utils import ZapRequest, build_zap_receipt, load_service_key, relay_set, validate_zap_request
from settlement import SettlementWatcher

logger = logging.getLogger(__name__)

# Username validation pattern (alphanumeric, underscore, hyphen, period)
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
MAX_USERNAME_LENGTH = 64

SUCCESS_MESSAGE = "Thank You!"
ERROR_INVOICE_CREATION_FAILED = "Failed to create invoice"


def lnurl_metadata(username: str, host: str) -> str:
    """LNURL metadata string; its SHA-256 is the plain-payment description hash."""
    return json.dumps([
        ["text/identifier", f"{username}@{host}"],
        ["text/plain", f"Sats for {username}!"],
    ])


class ReceiptPipeline:
    """Builds, signs and publishes the zap receipt for a settled invoice."""

    def __init__(self, service_key: PrivateKey, publisher: RelayPublisher,
                 default_relays, max_relays: int = 10, clock=time.time):
        self.service_key = service_key
        self.publisher = publisher
        self.default_relays = list(default_relays)
        self.max_relays = max_relays
        self.clock = clock

    def __call__(self, zap_request: ZapRequest, payment_request: PaymentRequest,
                 update: InvoiceUpdate) -> dict:
        receipt = build_zap_receipt(zap_request, payment_request, self.service_key, int(self.clock()))
        relays = relay_set(zap_request, self.default_relays, self.max_relays)
        try:
            url = self.publisher.publish(relays, receipt)
        except PublishError as e:
            # The payment already succeeded; nothing to roll back.
            logger.error("Zap receipt %s for invoice %s not delivered: %s",
                         receipt["id"][:16], payment_request.id[:16], e)
        else:
            logger.info("Zap receipt %s for invoice %s published via %s (%d relays)",
                        receipt["id"][:16], payment_request.id[:16], url, len(relays))
        return receipt


@dataclass
class LightningAddressService:
    """Process-scoped resources, created once and shared by every request."""

    settings: config.Settings
    service_key: PrivateKey
    backend: LightningBackend
    domains: DomainValidator
    invoices: InvoiceFactory
    watcher: SettlementWatcher
    publisher: RelayPublisher
    pipeline: ReceiptPipeline

    @property
    def pubkey(self) -> str:
        return self.service_key.public_key.hex()

    def shutdown(self) -> None:
        self.watcher.shutdown()


def create_app(
    settings: Optional[config.Settings] = None,
    backend: Optional[LightningBackend] = None,
    publisher: Optional[RelayPublisher] = None,
    service_key: Optional[PrivateKey] = None,
    clock=time.time,
) -> Flask:
    """Build the Flask app. Raises ConfigurationError on bad settings or key."""
    settings = settings or config.load_settings()
    service_key = service_key or load_service_key(settings.nostr_private_key)
    backend = backend or build_lightning_backend(settings)
    publisher = publisher or RelayPublisher(
        timeout=settings.nostr_relay_timeout,
        verify_ssl=settings.nostr_relay_verify_ssl,
    )
    service = LightningAddressService(
        settings=settings,
        service_key=service_key,
        backend=backend,
        domains=DomainValidator(settings.domains),
        invoices=InvoiceFactory(backend),
        watcher=SettlementWatcher(backend, settings.settlement_max_wait_seconds),
        publisher=publisher,
        pipeline=ReceiptPipeline(
            service_key, publisher, settings.nostr_relays, settings.nostr_max_relays, clock=clock
        ),
    )

    app = Flask(__name__)
    CORS(app, origins=settings.cors_origins)
    app.extensions["lightning_address"] = service

    # --- Request logging ---

    @app.before_request
    def _start_timer():
        g.request_started = time.monotonic()

    @app.after_request
    def _log_request(response):
        duration_ms = (time.monotonic() - g.get("request_started", time.monotonic())) * 1000
        line = "%s %s %d - %.0fms"
        args = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error("Server Error: " + line, *args)
        elif response.status_code >= 400:
            logger.warning("Client Error: " + line, *args)
        else:
            logger.info("Success: " + line, *args)
        return response

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        return jsonify({"status": "ERROR", "reason": e.reason}), e.status_code

    def _require_domain() -> str:
        host = normalize_host(request.host)
        if not service.domains.is_allowed(host):
            logger.error('Invalid domain. "%s" is not in the LNADDR_DOMAINS list.', host)
            raise UnknownDomain()
        return host

    def _require_user(username: str) -> str:
        if not username or len(username) > MAX_USERNAME_LENGTH or not USERNAME_PATTERN.match(username):
            raise UnknownUser()
        if settings.usernames and username.lower() not in [u.lower() for u in settings.usernames]:
            raise UnknownUser()
        return username

    def _parse_amount(value: Optional[str]) -> int:
        if value is None or value == "":
            raise MissingAmount()
        if not (value.isascii() and value.isdigit()):
            raise InvalidAmount("Invalid amount format")
        amount_msat = int(value)
        if amount_msat < settings.min_sendable_msats or amount_msat > settings.max_sendable_msats:
            raise InvalidAmount(
                f"Amount must be between {settings.min_sendable_msats} "
                f"and {settings.max_sendable_msats} millisats"
            )
        return amount_msat

    # --- LNURL Pay (LUD-16 + NIP-57) ---

    @app.route("/.well-known/lnurlp/<username>")
    def lnurlp_well_known(username):
        """
        LNURL-pay endpoint per LUD-16.
        Returns capability info including allowsNostr and nostrPubkey for NIP-57 Zaps.
        """
        host = _require_domain()
        username = _require_user(username)

        callback = f"{settings.url_scheme}://{request.host.lower()}/lnurlp/callback/{username}"
        logger.info("LNURL metadata requested for %s@%s", username, host)
        return jsonify({
            "status": "OK",
            "callback": callback,
            "tag": "payRequest",
            "maxSendable": settings.max_sendable_msats,
            "minSendable": settings.min_sendable_msats,
            "metadata": lnurl_metadata(username, host),
            "commentsAllowed": 0,
            "allowsNostr": True,
            "nostrPubkey": service.pubkey,
        })

    @app.route("/lnurlp/callback/<username>")
    def lnurlp_callback(username):
        """
        LNURL-pay callback. Receives amount and an optional nostr (9734) event.
        With a zap request the invoice commits to the raw event and a settlement
        watch is registered; the response never waits for settlement.
        """
        host = _require_domain()
        username = _require_user(username)
        amount_msat = _parse_amount(request.args.get("amount"))

        nostr_param = request.args.get("nostr")
        zap_request = None
        if nostr_param is not None:
            zap_request, description_hash = validate_zap_request(nostr_param, amount_msat)
        else:
            description_hash = metadata_description_hash(lnurl_metadata(username, host))

        logger.info("Requesting a %d msat invoice for %s@%s%s", amount_msat, username, host,
                    " (zap)" if zap_request else "")
        try:
            payment_request = service.invoices.create(amount_msat, description_hash)
        except BackendError as e:
            logger.error("Pay Request ERROR: %s", e)
            return jsonify({"status": "ERROR", "reason": ERROR_INVOICE_CREATION_FAILED}), 500

        if zap_request is not None:
            service.watcher.register(
                payment_request.id,
                functools.partial(service.pipeline, zap_request, payment_request),
            )

        return jsonify({
            "status": "OK",
            "successAction": {"tag": "message", "message": SUCCESS_MESSAGE},
            "routes": [],
            "pr": payment_request.bolt11,
            "disposable": False,
        })

    # --- Operations ---

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "backend": service.backend.name,
            "active_watches": service.watcher.active_count(),
        })

    @app.route("/api/pending-invoices")
    def pending_invoices():
        """List unpaid invoices (mock backend, dev only)."""
        _require_domain()
        if not isinstance(service.backend, MockLightningBackend):
            return jsonify({"error": "Only available with mock backend"}), 400
        return jsonify({"pending": service.backend.pending_invoices()})

    @app.route("/api/simulate-payment", methods=["POST"])
    def simulate_payment():
        """For Mock backend: mark an invoice as paid (development only)."""
        _require_domain()
        if not isinstance(service.backend, MockLightningBackend):
            return jsonify({"error": "Only available with mock backend"}), 400

        data = request.get_json(silent=True) or {}
        invoice_id = data.get("invoice_id")
        if not invoice_id:
            return jsonify({"error": "Missing invoice_id"}), 400
        if not service.backend.simulate_payment(invoice_id):
            return jsonify({"error": "Invoice not found"}), 404
        return jsonify({"status": "ok"}), 200

    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    try:
        settings = config.load_settings()
        logging.getLogger().setLevel(settings.log_level)
        app = create_app(settings)
    except ConfigurationError as e:
        logger.error("Configuration validation failed:")
        for problem in e.problems:
            logger.error("  - %s", problem)
        sys.exit(1)

    service = app.extensions["lightning_address"]
    logger.info("Starting Lightning Address server on %s:%d", settings.host, settings.port)
    logger.info("Domains: %s", ", ".join(settings.domains) or "(none - all requests refused)")
    logger.info("Amount range: %d-%d msat", settings.min_sendable_msats, settings.max_sendable_msats)
    logger.info("Lightning backend: %s, nostr pubkey: %s", service.backend.name, service.pubkey)
    try:
        app.run(host=settings.host, port=settings.port, debug=settings.debug,
                threaded=True, use_reloader=False)
    finally:
        service.shutdown()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
