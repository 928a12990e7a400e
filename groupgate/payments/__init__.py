"""
Payment gateways (internal library).
Gateways build signed URLs and verify/normalize webhooks; the dispatcher feeds verified
payments into the entitlement store exactly once per payment_id.
"""
from groupgate.payments.base import (
    NormalizedPayment,
    PaymentGateway,
    PaymentOptions,
    SubscriptionOptions,
)
from groupgate.payments.dispatcher import DispatchResult, WebhookDispatcher
from groupgate.payments.errors import (
    ConfigurationError,
    FormatError,
    PaymentError,
    PersistenceError,
    UnknownProviderError,
    ValidationError,
)
from groupgate.payments.registry import GatewayRegistry, get_registry

__all__ = [
    "ConfigurationError",
    "DispatchResult",
    "FormatError",
    "GatewayRegistry",
    "NormalizedPayment",
    "PaymentError",
    "PaymentGateway",
    "PaymentOptions",
    "PersistenceError",
    "SubscriptionOptions",
    "UnknownProviderError",
    "ValidationError",
    "WebhookDispatcher",
    "get_registry",
]
