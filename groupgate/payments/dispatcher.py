"""
WebhookDispatcher: provider lookup -> verify -> status gate -> normalize -> record -> success callback.

Storage-agnostic: the recorder enforces payment_id uniqueness and the callback extends the
entitlement. Both run inside the caller's unit of work; the caller commits or rolls back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol

from groupgate.payments.base import STATUS_COMPLETE, NormalizedPayment
from groupgate.payments.errors import FormatError, PersistenceError
from groupgate.payments.registry import GatewayRegistry
from groupgate.utils.metrics import webhook_requests_total

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = frozenset({"CANCELLED", "SUBSCRIPTION_CANCELLED"})


@dataclass(frozen=True)
class DispatchResult:
    status_code: int
    message: str
    outcome: str
    payment: NormalizedPayment | None = None


class PaymentRecorder(Protocol):
    def record_payment(self, payment: NormalizedPayment) -> bool:
        """Insert the payment; False if payment_id was already recorded. Raises PersistenceError."""

    def credentials_for(self, provider_name: str, group_id: int | None) -> Mapping[str, str] | None:
        """Group-level credential bag for verification, or None for deployment defaults."""


SuccessCallback = Callable[[NormalizedPayment], None]


class WebhookDispatcher:
    def __init__(
        self,
        registry: GatewayRegistry,
        recorder: PaymentRecorder,
        on_success: SuccessCallback,
    ) -> None:
        self.registry = registry
        self.recorder = recorder
        self.on_success = on_success

    def _result(self, provider: str, status_code: int, message: str, outcome: str, payment=None) -> DispatchResult:
        webhook_requests_total.labels(provider=provider, outcome=outcome).inc()
        return DispatchResult(status_code=status_code, message=message, outcome=outcome, payment=payment)

    def dispatch(self, provider_name: str, notification: Mapping[str, str]) -> DispatchResult:
        """
        Handle one inbound notification.

        Raises UnknownProviderError for an unregistered provider and PersistenceError when the
        payment could not be recorded or settled. Rejections (missing fields, bad signature,
        unparseable reference) are returned as 400 results and never touch the store.
        """
        gateway = self.registry.get(provider_name)
        name = gateway.name

        missing = gateway.missing_fields(notification)
        if missing:
            logger.warning("webhook_missing_fields", extra={"provider": name, "error": ",".join(missing)})
            return self._result(name, 400, "Missing required fields", "rejected")

        credentials = self.recorder.credentials_for(name, gateway.group_id_of(notification))
        gateway = gateway.with_credentials(credentials)

        if not gateway.verify(notification):
            return self._result(name, 400, "Invalid notification", "rejected")

        status = gateway.payment_status(notification)
        if status != STATUS_COMPLETE:
            logger.info("webhook_status_acknowledged", extra={"provider": name, "action": status})
            if status in CANCELLED_STATUSES:
                return self._result(name, 200, "Subscription cancellation acknowledged", "acknowledged")
            return self._result(name, 200, "Notification received", "acknowledged")

        try:
            payment = gateway.normalize(notification)
        except FormatError as e:
            logger.warning("webhook_format_error", extra={"provider": name, "error": str(e)})
            return self._result(name, 400, "Malformed notification", "rejected")

        if not self.recorder.record_payment(payment):
            logger.info(
                "webhook_duplicate_payment",
                extra={"provider": name, "payment_id": payment.payment_id, "user_id": payment.user_id},
            )
            return self._result(name, 200, "Payment already processed", "duplicate", payment)

        try:
            self.on_success(payment)
        except PersistenceError:
            webhook_requests_total.labels(provider=name, outcome="error").inc()
            raise
        except Exception as e:
            webhook_requests_total.labels(provider=name, outcome="error").inc()
            logger.exception(
                "webhook_success_callback_failed",
                extra={"provider": name, "payment_id": payment.payment_id},
            )
            raise PersistenceError(f"Settlement failed for {payment.payment_id}") from e

        logger.info(
            "webhook_payment_processed",
            extra={
                "provider": name,
                "payment_id": payment.payment_id,
                "user_id": payment.user_id,
                "group_id": payment.group_id,
            },
        )
        return self._result(name, 200, "Payment processed successfully", "processed", payment)
