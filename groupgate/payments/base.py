"""
Base classes and types for payment gateways.
Used by the registry, the webhook dispatcher and every provider (payfast, ...).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping

STATUS_COMPLETE = "COMPLETE"


@dataclass
class PaymentOptions:
    """Optional overrides for a one-off payment URL."""
    return_url: str | None = None
    cancel_url: str | None = None
    notify_url: str | None = None
    email_address: str | None = None


@dataclass
class SubscriptionOptions(PaymentOptions):
    """Recurring billing terms. frequency 3 = monthly, cycles 0 = until cancelled."""
    billing_date: date | None = None
    recurring_amount: Decimal | float | str | None = None
    frequency: int = 3
    cycles: int = 0
    initial_amount: Decimal | float | str | None = None


@dataclass
class NormalizedPayment:
    """Provider-independent view of a verified payment notification."""
    user_id: int
    group_id: int | None
    amount: Decimal
    currency: str
    payment_id: str
    status: str
    provider_name: str
    is_subscription: bool = False
    subscription_id: str | None = None
    token: str | None = None
    merchant_reference: str | None = None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


def format_amount(amount: Decimal | float | int | str) -> str:
    """Exactly two decimals, half-up."""
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    name: str = "base"
    display_name: str = ""
    # Credential keys collected by the configuration wizard, in prompt order.
    credential_fields: tuple[str, ...] = ()
    required_credentials: tuple[str, ...] = ()
    # Secrets tied to one merchant account: dropped from the defaults when a group brings its own account.
    account_secrets: tuple[str, ...] = ()
    # Notification fields without which a webhook is rejected before verification.
    required_fields: tuple[str, ...] = ()

    def __init__(self, config: Mapping[str, Any] | None = None):
        self.config: dict[str, Any] = dict(config or {})

    @abstractmethod
    def build_payment_url(
        self,
        user_id: int,
        group_id: int,
        amount: Decimal | float | str,
        item_name: str,
        item_description: str = "",
        options: PaymentOptions | None = None,
    ) -> str:
        """Build a one-off payment redirect URL on the gateway's domain."""

    @abstractmethod
    def build_subscription_url(
        self,
        user_id: int,
        group_id: int,
        amount: Decimal | float | str,
        item_name: str,
        item_description: str = "",
        subscription: SubscriptionOptions | None = None,
    ) -> str:
        """Build a recurring-billing redirect URL."""

    @abstractmethod
    def verify(self, notification: Mapping[str, str]) -> bool:
        """Authenticate an inbound notification."""

    @abstractmethod
    def normalize(self, notification: Mapping[str, str]) -> NormalizedPayment:
        """Map a verified notification to NormalizedPayment. Raises FormatError."""

    def fetch_subscription(self, token: str) -> dict:
        raise NotImplementedError(f"{self.name} does not expose a subscriptions API")

    def cancel_subscription(self, token: str) -> dict:
        raise NotImplementedError(f"{self.name} does not expose a subscriptions API")

    def webhook_path(self) -> str | None:
        """Provider-specific fixed path under /payments, or None for the generic route only."""
        return None

    def webhook_url(self, base_url: str) -> str:
        path = self.webhook_path() or f"/webhook/{self.name}"
        return f"{base_url.rstrip('/')}/payments{path}"

    def payment_status(self, notification: Mapping[str, str]) -> str:
        return str(notification.get("payment_status", "")).upper()

    def missing_fields(self, notification: Mapping[str, str]) -> list[str]:
        return [f for f in self.required_fields if not notification.get(f)]

    def missing_credentials(self) -> list[str]:
        return [k for k in self.required_credentials if not str(self.config.get(k) or "").strip()]

    def is_available(self) -> bool:
        """Check if gateway is configured well enough to build URLs."""
        return not self.missing_credentials()

    def group_id_of(self, notification: Mapping[str, str]) -> int | None:
        """Group the notification belongs to, used to pick per-group credentials."""
        return None

    def with_credentials(self, credentials: Mapping[str, Any] | None) -> "PaymentGateway":
        """Copy of this gateway with a group's credential bag layered over the defaults."""
        supplied = {k: v for k, v in (credentials or {}).items() if v not in (None, "")}
        if not supplied:
            return self
        merged = dict(self.config)
        if any(k in supplied for k in self.required_credentials):
            for key in self.account_secrets:
                merged.pop(key, None)
        merged.update(supplied)
        return self._clone(merged)

    def _clone(self, config: dict[str, Any]) -> "PaymentGateway":
        return type(self)(config)
