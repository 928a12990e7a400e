"""
EntitlementService: per-user-per-group subscription records.

Every write is "ensure"-shaped so concurrent evaluations of the same user/group are safe:
the (user_id, group_id) unique constraint turns a lost race into an IntegrityError inside a
savepoint, after which the winner's row is re-read.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupgate.core.config import settings
from groupgate.models.group_policy import GroupPolicy
from groupgate.models.user import GroupSubscription, JoinedGroup, User
from groupgate.services.users.service import UserService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiredSubscription:
    telegram_id: int
    group_id: int
    group_title: str | None


@dataclass(frozen=True)
class LapsedMember:
    telegram_id: int
    user_id: str
    group_id: int


class EntitlementService:
    def __init__(self, db: Session):
        self.db = db

    def get_subscription(self, user: User, group_id: int) -> GroupSubscription | None:
        return (
            self.db.query(GroupSubscription)
            .filter(GroupSubscription.user_id == user.id, GroupSubscription.group_id == group_id)
            .one_or_none()
        )

    def list_subscriptions(self, user: User) -> list[GroupSubscription]:
        return (
            self.db.query(GroupSubscription)
            .filter(GroupSubscription.user_id == user.id)
            .order_by(GroupSubscription.created_at)
            .all()
        )

    def _insert(self, sub: GroupSubscription) -> GroupSubscription | None:
        """Insert inside a savepoint; None if a row for (user, group) already exists."""
        try:
            with self.db.begin_nested():
                self.db.add(sub)
        except IntegrityError:
            return None
        return sub

    # ------------------------------------------------------------------
    # Admin / trial grants (access control side effects)
    # ------------------------------------------------------------------

    def ensure_admin_subscription(
        self,
        user: User,
        group_id: int,
        group_title: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Make sure a group admin holds an active zero-price subscription.
        Returns True only when something was written.
        """
        now = now or datetime.now(timezone.utc)
        expires = now + timedelta(days=settings.admin_subscription_days)
        sub = self.get_subscription(user, group_id)
        if sub is None:
            created = self._insert(
                GroupSubscription(
                    user_id=user.id,
                    group_id=group_id,
                    group_title=group_title,
                    is_subscribed=True,
                    subscription_start_date=now,
                    subscription_expires_at=expires,
                    payment_amount=Decimal("0"),
                    payment_currency=settings.default_currency,
                    is_admin_subscription=True,
                )
            )
            if created is not None:
                logger.info("admin_subscription_created", extra={"user_id": user.telegram_id, "group_id": group_id})
            return created is not None
        if sub.is_active(now):
            return False
        sub.is_subscribed = True
        sub.subscription_start_date = now
        sub.subscription_expires_at = expires
        sub.payment_amount = Decimal("0")
        sub.is_admin_subscription = True
        sub.is_trial = False
        self.db.flush()
        logger.info("admin_subscription_renewed", extra={"user_id": user.telegram_id, "group_id": group_id})
        return True

    def grant_trial(
        self,
        user: User,
        group_id: int,
        days: int,
        group_title: str | None = None,
        now: datetime | None = None,
    ) -> GroupSubscription | None:
        """Issue a trial only if the user never had an entry for this group."""
        now = now or datetime.now(timezone.utc)
        if self.get_subscription(user, group_id) is not None:
            return None
        sub = self._insert(
            GroupSubscription(
                user_id=user.id,
                group_id=group_id,
                group_title=group_title,
                is_subscribed=True,
                subscription_start_date=now,
                subscription_expires_at=now + timedelta(days=days),
                payment_amount=Decimal("0"),
                payment_currency=settings.default_currency,
                is_trial=True,
            )
        )
        if sub is not None:
            logger.info("trial_granted", extra={"user_id": user.telegram_id, "group_id": group_id})
        return sub

    # ------------------------------------------------------------------
    # Paid extension (webhook success callback)
    # ------------------------------------------------------------------

    def extend_subscription(
        self,
        telegram_id: int,
        group_id: int | None,
        amount: Decimal,
        currency: str,
        days: int | None = None,
        now: datetime | None = None,
    ) -> GroupSubscription | None:
        """
        Extend by a fixed duration from the current expiry (if still active) or from now.
        group_id None is a legacy single-group payment and extends the user-level flag.
        """
        now = now or datetime.now(timezone.utc)
        period = timedelta(days=days or settings.subscription_duration_days)
        user = UserService(self.db).get_or_create_user(telegram_id)

        if group_id is None:
            active = user.is_subscribed and user.subscription_expires_at and user.subscription_expires_at > now
            base = user.subscription_expires_at if active else now
            user.is_subscribed = True
            user.subscription_expires_at = base + period
            self.db.flush()
            return None

        sub = self.get_subscription(user, group_id)
        if sub is None:
            title = self.db.query(GroupPolicy.group_title).filter(GroupPolicy.group_id == group_id).scalar()
            sub = self._insert(
                GroupSubscription(
                    user_id=user.id,
                    group_id=group_id,
                    group_title=title,
                    is_subscribed=True,
                    subscription_start_date=now,
                    subscription_expires_at=now + period,
                    payment_amount=amount,
                    payment_currency=currency,
                )
            )
            if sub is not None:
                return sub
            sub = self.get_subscription(user, group_id)

        if sub.is_active(now):
            sub.subscription_expires_at = sub.subscription_expires_at + period
        else:
            sub.subscription_start_date = now
            sub.subscription_expires_at = now + period
        sub.is_subscribed = True
        sub.payment_amount = amount
        sub.payment_currency = currency
        sub.is_admin_subscription = False
        sub.is_trial = False
        self.db.flush()
        return sub

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def expire_lapsed(self, now: datetime | None = None) -> list[ExpiredSubscription]:
        """Flip subscriptions past their expiry to inactive. Safe to run concurrently."""
        now = now or datetime.now(timezone.utc)
        rows = (
            self.db.query(GroupSubscription, User.telegram_id)
            .join(User, User.id == GroupSubscription.user_id)
            .filter(
                GroupSubscription.is_subscribed.is_(True),
                GroupSubscription.subscription_expires_at <= now,
            )
            .all()
        )
        expired = []
        for sub, telegram_id in rows:
            sub.is_subscribed = False
            expired.append(ExpiredSubscription(telegram_id=telegram_id, group_id=sub.group_id, group_title=sub.group_title))

        legacy = (
            self.db.query(User)
            .filter(User.is_subscribed.is_(True), User.subscription_expires_at <= now)
            .all()
        )
        for user in legacy:
            user.is_subscribed = False
        self.db.flush()
        return expired

    def lapsed_members(self, policy: GroupPolicy, now: datetime | None = None) -> list[LapsedMember]:
        """Recorded members of a group without an active subscription, excluding admins and grace."""
        now = now or datetime.now(timezone.utc)
        if in_grace_period(policy, now):
            return []
        rows = (
            self.db.query(JoinedGroup, User.telegram_id)
            .join(User, User.id == JoinedGroup.user_id)
            .filter(JoinedGroup.group_id == policy.group_id)
            .all()
        )
        active_user_ids = {
            user_id
            for (user_id,) in self.db.query(GroupSubscription.user_id).filter(
                GroupSubscription.group_id == policy.group_id,
                GroupSubscription.is_subscribed.is_(True),
                GroupSubscription.subscription_expires_at > now,
            )
        }
        lapsed = []
        for membership, telegram_id in rows:
            if membership.user_id in active_user_ids or policy.is_admin(telegram_id):
                continue
            lapsed.append(LapsedMember(telegram_id=telegram_id, user_id=membership.user_id, group_id=policy.group_id))
        return lapsed


def in_grace_period(policy: GroupPolicy, now: datetime) -> bool:
    if policy.monetization_date is None:
        return False
    return now < policy.monetization_date + timedelta(hours=policy.existing_user_grace_period_hours)
