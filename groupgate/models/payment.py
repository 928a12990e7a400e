"""
Payment model: one row per verified, COMPLETE gateway notification.
payment_id is unique and is the idempotency key for webhook redelivery.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, Numeric, String

from groupgate.db.base import Base
from groupgate.db.types import UTCDateTime


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    provider_name = Column(String, nullable=False)
    payment_id = Column(String, unique=True, nullable=False)  # pf_payment_id for PayFast
    merchant_reference = Column(String, nullable=True)        # m_payment_id
    user_id = Column(BigInteger, nullable=False, index=True)   # telegram id
    group_id = Column(BigInteger, nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="completed")
    is_subscription = Column(Boolean, nullable=False, default=False)
    subscription_id = Column(String, nullable=True)
    token = Column(String, nullable=True)
    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
