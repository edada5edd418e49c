"""
Configuration for the Lightning Address (LNURL-pay + NIP-57 zaps) service.

Set via environment variables. Everything is read once at startup by
load_settings(); components receive the resulting Settings explicitly.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from errors import ConfigurationError

DEFAULT_RELAYS = "wss://relay.damus.io,wss://nos.lol"
LIGHTNING_BACKENDS = ("mock", "lnbits", "lnd")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _split(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _flag(value: Optional[str], default: str = "false") -> bool:
    return (value or default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    # Lightning address
    domains: List[str] = field(default_factory=list)
    host: str = "0.0.0.0"
    port: int = 3000
    url_scheme: str = "https"
    usernames: List[str] = field(default_factory=list)
    min_sendable_msats: int = 1000
    max_sendable_msats: int = 250000000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Lightning backend: "mock" | "lnbits" | "lnd"
    lightning_backend: str = "mock"
    lnbits_url: str = "https://legend.lnbits.com"
    lnbits_invoice_key: str = ""
    lnbits_poll_interval: float = 2.0
    lnd_rest_url: str = ""
    lnd_macaroon_hex: str = ""
    lnd_tls_cert_path: str = ""
    lnd_invoice_expiry: int = 3600

    # Nostr - service identity (signs Kind 9735 receipts)
    nostr_private_key: str = ""
    nostr_relays: List[str] = field(default_factory=lambda: _split(DEFAULT_RELAYS))
    nostr_max_relays: int = 10
    nostr_relay_timeout: float = 10.0
    nostr_relay_verify_ssl: bool = True

    # 0 means a watch never gives up on its own
    settlement_max_wait_seconds: float = 86400.0

    log_level: str = "INFO"
    debug: bool = False


def _read_macaroon(env) -> str:
    if env.get("LND_MACAROON_HEX"):
        return env["LND_MACAROON_HEX"].strip()
    path = env.get("LND_MACAROON_PATH", "")
    if not path:
        return ""
    try:
        with open(path, "rb") as f:
            return f.read().hex()
    except OSError as e:
        raise ConfigurationError(f"Cannot read LND macaroon {path}: {e}") from e


def load_settings(env=None) -> Settings:
    """Build Settings from the environment and validate them."""
    env = os.environ if env is None else env
    try:
        settings = Settings(
            domains=[d.lower() for d in _split(env.get("LNADDR_DOMAINS"))],
            host=env.get("LNADDR_HOST", "0.0.0.0"),
            port=int(env.get("LNADDR_PORT", "3000")),
            url_scheme=env.get("LNADDR_URL_SCHEME", "https"),
            usernames=_split(env.get("LNADDR_USERNAMES")),
            min_sendable_msats=int(env.get("LNADDR_MIN_SENDABLE_MSATS", "1000")),
            max_sendable_msats=int(env.get("LNADDR_MAX_SENDABLE_MSATS", "250000000")),
            cors_origins=_split(env.get("CORS_ORIGINS", "*")),
            lightning_backend=env.get("LIGHTNING_BACKEND", "mock").lower(),
            lnbits_url=env.get("LNBITS_URL", "https://legend.lnbits.com"),
            lnbits_invoice_key=env.get("LNBITS_INVOICE_KEY", ""),
            lnbits_poll_interval=float(env.get("LNBITS_POLL_INTERVAL", "2")),
            lnd_rest_url=env.get("LND_REST_URL", ""),
            lnd_macaroon_hex=_read_macaroon(env),
            lnd_tls_cert_path=env.get("LND_TLS_CERT_PATH", ""),
            lnd_invoice_expiry=int(env.get("LND_INVOICE_EXPIRY", "3600")),
            nostr_private_key=env.get("NOSTR_PRIVATE_KEY", "").strip(),
            nostr_relays=_split(env.get("NOSTR_RELAYS", DEFAULT_RELAYS)),
            nostr_max_relays=int(env.get("NOSTR_MAX_RELAYS", "10")),
            nostr_relay_timeout=float(env.get("NOSTR_RELAY_TIMEOUT", "10")),
            nostr_relay_verify_ssl=_flag(env.get("NOSTR_RELAY_VERIFY_SSL"), "true"),
            settlement_max_wait_seconds=float(env.get("SETTLEMENT_MAX_WAIT_SECONDS", "86400")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            debug=_flag(env.get("DEBUG")),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    errors = validate_settings(settings)
    if errors:
        raise ConfigurationError(errors)
    return settings


def validate_settings(settings: Settings) -> List[str]:
    """Return every configuration problem found (empty list when valid)."""
    errors = []

    if not (1 <= settings.port <= 65535):
        errors.append("LNADDR_PORT must be an integer between 1 and 65535")

    if settings.url_scheme not in ("http", "https"):
        errors.append("LNADDR_URL_SCHEME must be http or https")

    if settings.min_sendable_msats < 1:
        errors.append("LNADDR_MIN_SENDABLE_MSATS must be a positive integer")
    if settings.max_sendable_msats < 1:
        errors.append("LNADDR_MAX_SENDABLE_MSATS must be a positive integer")
    if settings.min_sendable_msats > settings.max_sendable_msats:
        errors.append("LNADDR_MIN_SENDABLE_MSATS cannot be greater than LNADDR_MAX_SENDABLE_MSATS")

    if settings.lightning_backend not in LIGHTNING_BACKENDS:
        errors.append(f"LIGHTNING_BACKEND must be one of {', '.join(LIGHTNING_BACKENDS)}")
    elif settings.lightning_backend == "lnbits" and not settings.lnbits_invoice_key:
        errors.append("LNBITS_INVOICE_KEY is required when LIGHTNING_BACKEND=lnbits")
    elif settings.lightning_backend == "lnd":
        if not settings.lnd_rest_url:
            errors.append("LND_REST_URL is required when LIGHTNING_BACKEND=lnd")
        if not settings.lnd_macaroon_hex:
            errors.append("LND_MACAROON_HEX or LND_MACAROON_PATH is required when LIGHTNING_BACKEND=lnd")

    if settings.lnbits_poll_interval <= 0:
        errors.append("LNBITS_POLL_INTERVAL must be positive")

    if not settings.nostr_private_key:
        errors.append("NOSTR_PRIVATE_KEY is required (hex or nsec)")

    if settings.nostr_max_relays < 1:
        errors.append("NOSTR_MAX_RELAYS must be at least 1")
    if settings.nostr_relay_timeout <= 0:
        errors.append("NOSTR_RELAY_TIMEOUT must be positive")
    if settings.settlement_max_wait_seconds < 0:
        errors.append("SETTLEMENT_MAX_WAIT_SECONDS cannot be negative")

    if settings.log_level not in LOG_LEVELS:
        errors.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    return errors
