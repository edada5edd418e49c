"""
Error taxonomy for the Lightning Address service.

ValidationError subclasses are answered to the HTTP caller with a reason.
BackendError and PublishError raised inside the settlement pipeline are only
ever logged.
"""


class LightningAddressError(Exception):
    """Base class for every error raised by this service."""


class ConfigurationError(LightningAddressError):
    """Fatal startup problem: missing credentials, bad key, bad bounds."""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ValidationError(LightningAddressError):
    status_code = 400
    default_reason = "Invalid request"

    def __init__(self, reason: str = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class MissingAmount(ValidationError):
    default_reason = "Missing amount parameter"


class InvalidAmount(ValidationError):
    default_reason = "Invalid amount"


class MalformedPayload(ValidationError):
    default_reason = "Malformed nostr payload"


class InvalidSignature(ValidationError):
    default_reason = "Invalid nostr signature"


class InvalidZapRequest(ValidationError):
    default_reason = "Invalid zap request"


class UnknownDomain(ValidationError):
    status_code = 404
    default_reason = "Unknown domain"


class UnknownUser(ValidationError):
    status_code = 404
    default_reason = "User not found"


class BackendError(LightningAddressError):
    """Invoice creation or subscription failure at the payment backend."""


class BackendUnavailable(BackendError):
    pass


class InvoiceRejected(BackendError):
    pass


class SubscriptionError(BackendError):
    pass


class PublishError(LightningAddressError):
    pass


class RelayError(PublishError):
    """A single relay refused, rejected or timed out."""

    def __init__(self, relay: str, message: str):
        self.relay = relay
        self.message = message
        super().__init__(f"{relay}: {message}")


class AllRelaysFailed(PublishError):
    def __init__(self, errors: dict):
        self.errors = dict(errors)
        if self.errors:
            detail = ", ".join(f"{url} ({err})" for url, err in self.errors.items())
        else:
            detail = "no relays to publish to"
        super().__init__(f"All relays failed: {detail}")
