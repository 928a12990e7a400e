"""
GroupService: read/write of GroupPolicy (registration, pricing, enforcement, gateway credentials).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupgate.core.config import settings
from groupgate.models.group_policy import GroupPolicy
from groupgate.models.payment import Payment
from groupgate.models.user import GroupSubscription, JoinedGroup
from groupgate.payments.registry import GATEWAY_CLASSES

logger = logging.getLogger(__name__)

RESTRICTION_FIELDS = {
    "send": "restrict_non_subs_sending",
    "view": "restrict_non_subs_viewing",
    "remove": "auto_remove_non_subscribers",
    "trial": "user_trial_enabled",
}


class GroupNotFoundError(LookupError):
    def __init__(self, group_id: int):
        self.group_id = group_id
        super().__init__(f"Group {group_id} is not known")


class RegistrationIncompleteError(ValueError):
    """Registration or monetization attempted before the group is fully configured."""

    def __init__(self, group_id: int, missing: list[str]):
        self.group_id = group_id
        self.missing = missing
        super().__init__(f"Group {group_id} is missing: {', '.join(missing)}")


@dataclass(frozen=True)
class GroupStats:
    subscription_required: bool
    active_subscribers: int
    total_members: int
    payments_last_30_days: int
    revenue_last_30_days: Decimal
    currency: str

    @property
    def subscription_rate(self) -> int:
        """Active subscribers as a whole percentage of recorded members."""
        if not self.total_members:
            return 0
        return round(self.active_subscribers * 100 / self.total_members)


class GroupService:
    def __init__(self, db: Session):
        self.db = db

    def get(self, group_id: int) -> GroupPolicy | None:
        return self.db.query(GroupPolicy).filter(GroupPolicy.group_id == int(group_id)).one_or_none()

    def require(self, group_id: int) -> GroupPolicy:
        policy = self.get(group_id)
        if policy is None:
            raise GroupNotFoundError(group_id)
        return policy

    def get_or_create(self, group_id: int, group_title: str | None = None, added_by: int | None = None) -> GroupPolicy:
        policy = self.get(group_id)
        if policy is None:
            policy = GroupPolicy(
                group_id=int(group_id),
                group_title=group_title,
                admin_users=[int(added_by)] if added_by is not None else [],
                subscription_currency=settings.default_currency,
                existing_user_grace_period_hours=settings.default_grace_period_hours,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(policy)
            except IntegrityError:
                policy = self.require(group_id)
            else:
                logger.info("group_created", extra={"group_id": group_id, "user_id": added_by})
                return policy
        if group_title and policy.group_title != group_title:
            policy.group_title = group_title
        if added_by is not None:
            self.add_admin(policy, added_by)
        return policy

    def add_admin(self, policy: GroupPolicy, telegram_id: int) -> None:
        if policy.is_admin(telegram_id):
            return
        policy.admin_users = [*(policy.admin_users or []), int(telegram_id)]
        self.db.flush()

    def remove_admin(self, policy: GroupPolicy, telegram_id: int) -> None:
        if not policy.is_admin(telegram_id):
            return
        policy.admin_users = [x for x in policy.admin_users if int(x) != int(telegram_id)]
        self.db.flush()
        logger.info("group_admin_removed", extra={"group_id": policy.group_id, "user_id": telegram_id})

    def sync_admin(self, policy: GroupPolicy, telegram_id: int, is_admin: bool) -> None:
        """Keep the stored admin list (used for menus only) in line with a live chat check."""
        if is_admin:
            self.add_admin(policy, telegram_id)
        else:
            self.remove_admin(policy, telegram_id)

    def groups_administered_by(self, telegram_id: int) -> list[GroupPolicy]:
        policies = self.db.query(GroupPolicy).order_by(GroupPolicy.created_at).all()
        return [p for p in policies if p.is_admin(telegram_id)]

    # ------------------------------------------------------------------
    # Wizard-driven settings
    # ------------------------------------------------------------------

    def set_price(self, group_id: int, price: Decimal) -> GroupPolicy:
        if price <= 0:
            raise ValueError("price must be positive")
        policy = self.require(group_id)
        policy.subscription_price = price
        policy.subscription_currency = settings.default_currency
        self.db.flush()
        logger.info("group_price_set", extra={"group_id": group_id})
        return policy

    def set_welcome_message(self, group_id: int, text: str) -> GroupPolicy:
        policy = self.require(group_id)
        policy.welcome_message = text
        self.db.flush()
        return policy

    def set_trial_days(self, group_id: int, days: int) -> GroupPolicy:
        if not settings.trial_days_min <= days <= settings.trial_days_max:
            raise ValueError(f"trial days must be within [{settings.trial_days_min}, {settings.trial_days_max}]")
        policy = self.require(group_id)
        policy.user_trial_days = days
        policy.user_trial_enabled = True
        self.db.flush()
        return policy

    def set_payment_method(self, group_id: int, provider: str) -> GroupPolicy:
        if provider not in GATEWAY_CLASSES:
            raise ValueError(f"unsupported payment method: {provider}")
        policy = self.require(group_id)
        policy.payment_method = provider
        self.db.flush()
        return policy

    def update_payment_credentials(self, group_id: int, provider: str, **fields: str) -> GroupPolicy:
        """Merge fields into the provider's credential bag (new dict so JSON change is detected)."""
        policy = self.require(group_id)
        bag = dict(policy.custom_payment_settings or {})
        provider_bag = dict(bag.get(provider) or {})
        provider_bag.update(fields)
        bag[provider] = provider_bag
        policy.custom_payment_settings = bag
        self.db.flush()
        logger.info(
            "group_payment_credentials_updated",
            extra={"group_id": group_id, "provider": provider, "action": ",".join(sorted(fields))},
        )
        return policy

    # ------------------------------------------------------------------
    # Registration & enforcement
    # ------------------------------------------------------------------

    def missing_for_registration(self, policy: GroupPolicy) -> list[str]:
        missing = []
        if not policy.subscription_price or policy.subscription_price <= 0:
            missing.append("subscription price")
        gateway_cls = GATEWAY_CLASSES.get(policy.payment_method)
        if gateway_cls is None:
            missing.append("payment method")
        else:
            creds = policy.credentials_for(policy.payment_method)
            missing.extend(
                f"{policy.payment_method} {field.replace('_', ' ')}"
                for field in gateway_cls.required_credentials
                if not str(creds.get(field) or "").strip()
            )
        return missing

    def complete_registration(self, group_id: int, now: datetime | None = None) -> GroupPolicy:
        now = now or datetime.now(timezone.utc)
        policy = self.require(group_id)
        missing = self.missing_for_registration(policy)
        if missing:
            raise RegistrationIncompleteError(group_id, missing)
        policy.is_registered = True
        policy.registration_date = policy.registration_date or now
        policy.subscription_required = True
        if policy.monetization_date is None:
            policy.monetization_date = now
        policy.trial_active = True
        policy.trial_start_date = now
        policy.trial_end_date = now + timedelta(days=settings.default_trial_days)
        self.db.flush()
        logger.info("group_registered", extra={"group_id": group_id})
        return policy

    def set_subscription_required(self, group_id: int, enabled: bool, now: datetime | None = None) -> GroupPolicy:
        """Enabling starts (or restarts) the grace period for existing members."""
        policy = self.require(group_id)
        if enabled and not policy.is_registered:
            raise RegistrationIncompleteError(group_id, ["registration"])
        if enabled and not policy.subscription_required:
            policy.monetization_date = now or datetime.now(timezone.utc)
        policy.subscription_required = enabled
        self.db.flush()
        logger.info("group_monetization_toggled", extra={"group_id": group_id, "action": str(enabled)})
        return policy

    def set_restriction(self, group_id: int, kind: str, enabled: bool) -> GroupPolicy:
        field = RESTRICTION_FIELDS.get(kind)
        if field is None:
            raise ValueError(f"unknown restriction: {kind}")
        policy = self.require(group_id)
        setattr(policy, field, enabled)
        if kind == "trial" and enabled and not policy.user_trial_days:
            policy.user_trial_days = settings.default_trial_days
        self.db.flush()
        return policy

    def set_grace_period_hours(self, group_id: int, hours: int) -> GroupPolicy:
        if not 0 <= hours <= settings.grace_period_hours_max:
            raise ValueError(f"grace period must be within [0, {settings.grace_period_hours_max}] hours")
        policy = self.require(group_id)
        policy.existing_user_grace_period_hours = hours
        self.db.flush()
        return policy

    def auto_removal_groups(self) -> list[GroupPolicy]:
        return (
            self.db.query(GroupPolicy)
            .filter(
                GroupPolicy.auto_remove_non_subscribers.is_(True),
                GroupPolicy.is_registered.is_(True),
                GroupPolicy.subscription_required.is_(True),
            )
            .all()
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self, group_id: int, now: datetime | None = None) -> GroupStats:
        """Counts cover users the bot has seen; members who never interacted are not recorded."""
        now = now or datetime.now(timezone.utc)
        policy = self.require(group_id)
        active_subscribers = (
            self.db.query(func.count(GroupSubscription.id))
            .filter(
                GroupSubscription.group_id == policy.group_id,
                GroupSubscription.is_subscribed.is_(True),
                GroupSubscription.subscription_expires_at > now,
            )
            .scalar()
        )
        total_members = (
            self.db.query(func.count(JoinedGroup.id))
            .filter(JoinedGroup.group_id == policy.group_id)
            .scalar()
        )
        payment_count, revenue = (
            self.db.query(func.count(Payment.id), func.sum(Payment.amount))
            .filter(
                Payment.group_id == policy.group_id,
                Payment.status == "completed",
                Payment.created_at > now - timedelta(days=30),
            )
            .one()
        )
        return GroupStats(
            subscription_required=policy.subscription_required,
            active_subscribers=active_subscribers or 0,
            total_members=total_members or 0,
            payments_last_30_days=payment_count or 0,
            revenue_last_30_days=Decimal(str(revenue or 0)),
            currency=policy.subscription_currency,
        )
