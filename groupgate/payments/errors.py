"""
Payment error taxonomy.
The HTTP layer maps ValidationError -> 400, UnknownProviderError -> 404, PersistenceError -> 500.
ConfigurationError is raised synchronously to whoever builds a payment URL.
"""


class PaymentError(Exception):
    """Base class for payment gateway errors."""


class ValidationError(PaymentError):
    """Malformed webhook payload or signature mismatch. Never mutates state."""


class FormatError(ValidationError):
    """A notification field could not be parsed (e.g. m_payment_id)."""


class UnknownProviderError(PaymentError):
    def __init__(self, name: str | None, available: list[str] | None = None):
        self.name = name
        self.available = available or []
        super().__init__(
            f"Unknown payment provider: {name}. Available providers: {', '.join(self.available) or '-'}"
        )


class ConfigurationError(PaymentError):
    """Gateway credentials missing or incomplete."""


class PersistenceError(PaymentError):
    """Entitlement store unavailable while handling a webhook."""
