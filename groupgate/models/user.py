from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from groupgate.db.base import Base
from groupgate.db.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    telegram_username = Column(String, nullable=True)
    telegram_first_name = Column(String, nullable=True)
    # Legacy single-group entitlement; per-group state lives in group_subscriptions.
    is_subscribed = Column(Boolean, nullable=False, default=False)
    subscription_expires_at = Column(UTCDateTime, nullable=True)
    last_subscription_prompt_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    group_subscriptions = relationship(
        "GroupSubscription",
        back_populates="user",
        order_by="GroupSubscription.created_at",
        cascade="all, delete-orphan",
    )
    joined_groups = relationship(
        "JoinedGroup",
        back_populates="user",
        order_by="JoinedGroup.joined_at",
        cascade="all, delete-orphan",
    )


class GroupSubscription(Base):
    __tablename__ = "group_subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_group_subscriptions_user_group"),
        CheckConstraint(
            "NOT is_subscribed OR subscription_expires_at IS NOT NULL",
            name="ck_group_subscriptions_expiry_present",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(BigInteger, nullable=False, index=True)
    group_title = Column(String, nullable=True)
    is_subscribed = Column(Boolean, nullable=False, default=False)
    subscription_start_date = Column(UTCDateTime, nullable=True)
    subscription_expires_at = Column(UTCDateTime, nullable=True)
    payment_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_currency = Column(String(3), nullable=False, default="ZAR")
    is_admin_subscription = Column(Boolean, nullable=False, default=False)
    is_trial = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="group_subscriptions")

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or _utcnow()
        return bool(
            self.is_subscribed
            and self.subscription_expires_at is not None
            and self.subscription_expires_at > now
        )


class JoinedGroup(Base):
    __tablename__ = "joined_groups"
    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_joined_groups_user_group"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(BigInteger, nullable=False, index=True)
    group_title = Column(String, nullable=True)
    joined_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    user = relationship("User", back_populates="joined_groups")
