"""
Payment persistence and checkout.

SettlementService is the webhook dispatcher's store adapter:
- record_payment inserts a Payment row; payment_id is unique, a duplicate is a no-op
- settle is the success callback and extends the matching GroupSubscription
- credentials_for picks the group's credential bag for signature verification

CheckoutService builds gateway redirect URLs for a user/group pair.
"""
import logging
from datetime import date, datetime, timezone
from typing import Mapping

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from groupgate.core.config import settings
from groupgate.models.group_policy import GroupPolicy
from groupgate.models.payment import Payment
from groupgate.payments.base import NormalizedPayment, SubscriptionOptions
from groupgate.payments.errors import ConfigurationError, PersistenceError
from groupgate.payments.registry import GatewayRegistry
from groupgate.services.entitlements.service import EntitlementService
from groupgate.services.groups.service import GroupService
from groupgate.utils.metrics import payments_settled_total

logger = logging.getLogger(__name__)


class SettlementService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Recorder
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: str) -> Payment | None:
        return self.db.query(Payment).filter(Payment.payment_id == payment_id).one_or_none()

    def record_payment(self, payment: NormalizedPayment) -> bool:
        """
        Insert the payment row. False when payment_id is already recorded.
        Uniqueness is enforced by the payments.payment_id constraint; the pre-check only
        short-circuits the common redelivery case.
        """
        try:
            if self.get_payment(payment.payment_id) is not None:
                return False
            record = Payment(
                provider_name=payment.provider_name,
                payment_id=payment.payment_id,
                merchant_reference=payment.merchant_reference,
                user_id=payment.user_id,
                group_id=payment.group_id,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status,
                is_subscription=payment.is_subscription,
                subscription_id=payment.subscription_id,
                token=payment.token,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(record)
            except IntegrityError:
                logger.info("payment_duplicate_insert", extra={"payment_id": payment.payment_id})
                return False
        except SQLAlchemyError as e:
            logger.exception("payment_record_failed", extra={"payment_id": payment.payment_id})
            raise PersistenceError(str(e)) from e
        return True

    def credentials_for(self, provider_name: str, group_id: int | None) -> Mapping[str, str] | None:
        if group_id is None:
            return None
        try:
            policy = GroupService(self.db).get(group_id)
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        if policy is None:
            return None
        return policy.credentials_for(provider_name) or None

    # ------------------------------------------------------------------
    # Success callback
    # ------------------------------------------------------------------

    def settle(self, payment: NormalizedPayment) -> None:
        try:
            sub = EntitlementService(self.db).extend_subscription(
                telegram_id=payment.user_id,
                group_id=payment.group_id,
                amount=payment.amount,
                currency=payment.currency,
            )
        except SQLAlchemyError as e:
            logger.exception("payment_settle_failed", extra={"payment_id": payment.payment_id})
            raise PersistenceError(str(e)) from e
        payments_settled_total.labels(provider=payment.provider_name).inc()
        logger.info(
            "subscription_extended",
            extra={
                "user_id": payment.user_id,
                "group_id": payment.group_id,
                "payment_id": payment.payment_id,
                "provider": payment.provider_name,
            },
        )
        if sub is None:
            logger.info("legacy_subscription_extended", extra={"user_id": payment.user_id})


class CheckoutService:
    def __init__(self, db: Session, registry: GatewayRegistry):
        self.db = db
        self.registry = registry

    def build_checkout_url(self, telegram_id: int, group_id: int, today: date | None = None) -> str:
        """
        Recurring subscription URL for the group's configured gateway.
        Raises ConfigurationError if the group cannot take payments yet.
        """
        policy: GroupPolicy = GroupService(self.db).require(group_id)
        if not policy.is_registered or not policy.subscription_required:
            raise ConfigurationError("Group is not accepting subscriptions")
        if not policy.subscription_price or policy.subscription_price <= 0:
            raise ConfigurationError("Subscription price is not set")
        gateway = self.registry.configured(policy.payment_method, policy.credentials_for(policy.payment_method))
        title = policy.group_title or str(group_id)
        return gateway.build_subscription_url(
            user_id=telegram_id,
            group_id=group_id,
            amount=policy.subscription_price,
            item_name=f"{title} subscription",
            item_description=f"Monthly access to {title}",
            subscription=SubscriptionOptions(
                billing_date=today or datetime.now(timezone.utc).date(),
                return_url=settings.payfast_return_url or None,
                cancel_url=settings.payfast_cancel_url or None,
            ),
        )
