"""
GroupPolicy: per-chat monetization settings.
custom_payment_settings is keyed by provider name and holds an opaque credential bag.
"""
import math
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, Integer, JSON, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from groupgate.db.base import Base
from groupgate.db.types import UTCDateTime

JsonType = JSON().with_variant(JSONB(), "postgresql")


class GroupPolicy(Base):
    __tablename__ = "group_policies"
    __table_args__ = (
        CheckConstraint(
            "NOT subscription_required OR is_registered",
            name="ck_group_policies_required_needs_registration",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    group_id = Column(BigInteger, unique=True, nullable=False, index=True)
    group_title = Column(String, nullable=True)
    welcome_message = Column(Text, nullable=True)
    admin_users = Column(JsonType, nullable=False, default=list)  # telegram ids

    is_registered = Column(Boolean, nullable=False, default=False)
    registration_date = Column(UTCDateTime, nullable=True)
    # Group-level trial started at registration
    trial_active = Column(Boolean, nullable=False, default=False)
    trial_start_date = Column(UTCDateTime, nullable=True)
    trial_end_date = Column(UTCDateTime, nullable=True)

    subscription_required = Column(Boolean, nullable=False, default=False)
    subscription_price = Column(Numeric(12, 2), nullable=False, default=0)
    subscription_currency = Column(String(3), nullable=False, default="ZAR")
    payment_method = Column(String, nullable=False, default="payfast")
    custom_payment_settings = Column(JsonType, nullable=False, default=dict)

    restrict_non_subs_sending = Column(Boolean, nullable=False, default=False)
    restrict_non_subs_viewing = Column(Boolean, nullable=False, default=False)
    auto_remove_non_subscribers = Column(Boolean, nullable=False, default=False)
    user_trial_enabled = Column(Boolean, nullable=False, default=False)
    user_trial_days = Column(Integer, nullable=False, default=0)

    monetization_date = Column(UTCDateTime, nullable=True)
    existing_user_grace_period_hours = Column(Integer, nullable=False, default=24)

    created_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def credentials_for(self, provider: str) -> dict:
        return dict((self.custom_payment_settings or {}).get(provider) or {})

    def is_admin(self, telegram_id: int) -> bool:
        return int(telegram_id) in {int(x) for x in (self.admin_users or [])}

    def trial_days_left(self, now: datetime | None = None) -> int | None:
        """Days (rounded up) left in the group's registration trial; None once it is over."""
        if not self.trial_active or self.trial_end_date is None:
            return None
        remaining = (self.trial_end_date - (now or datetime.now(timezone.utc))).total_seconds()
        if remaining <= 0:
            return None
        return math.ceil(remaining / 86400)
