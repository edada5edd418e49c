"""Host allow-list for the Lightning Address endpoints."""

import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def normalize_host(host: Optional[str]) -> str:
    """Lowercase a Host header value and drop any port and trailing dot."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, e.g. [::1]:3000
        host = host[1:].split("]", 1)[0]
    elif host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


class DomainValidator:
    """Answers whether this service may respond for a given host.

    An empty allow-list rejects every host.
    """

    def __init__(self, allowed_domains: Optional[Iterable[str]] = None):
        self._allowed = frozenset(
            normalize_host(d) for d in (allowed_domains or []) if normalize_host(d)
        )
        if not self._allowed:
            logger.warning("Domain allow-list is empty; every request will be refused")

    def is_allowed(self, host: Optional[str]) -> bool:
        name = normalize_host(host)
        return bool(name) and name in self._allowed

    @property
    def domains(self) -> frozenset:
        return self._allowed
