"""
DTO access control: AccessContext (input of decide_access) and AccessDecision.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    MESSAGE = "message"
    MEMBER_JOIN = "member_join"


class AccessAction(str, Enum):
    ALLOW = "allow"
    GRANT_TRIAL = "grant_trial"
    RESTRICT_SEND = "restrict_send"  # delete the message, DM the user
    RESTRICT_VIEW = "restrict_view"  # remove the member, DM the user


# ----- Snapshots of store entities (read once per event, never cached) -----


class PolicySnapshot(BaseModel):
    group_id: int
    group_title: str | None = None
    is_registered: bool = False
    subscription_required: bool = False
    subscription_price: Decimal = Decimal("0")
    subscription_currency: str = "ZAR"
    restrict_non_subs_sending: bool = False
    restrict_non_subs_viewing: bool = False
    user_trial_enabled: bool = False
    user_trial_days: int = 0
    monetization_date: datetime | None = None
    existing_user_grace_period_hours: int = 24

    model_config = {"frozen": True, "from_attributes": True}


class SubscriptionSnapshot(BaseModel):
    is_subscribed: bool = False
    subscription_expires_at: datetime | None = None
    is_admin_subscription: bool = False
    is_trial: bool = False

    model_config = {"frozen": True, "from_attributes": True}

    def is_active(self, now: datetime) -> bool:
        return bool(
            self.is_subscribed
            and self.subscription_expires_at is not None
            and self.subscription_expires_at > now
        )


# ----- Input of decide_access -----


class AccessContext(BaseModel):
    """Everything decide_access needs for one chat event."""

    user_id: int
    group_id: int
    event_kind: EventKind
    policy: PolicySnapshot | None = None
    subscription: SubscriptionSnapshot | None = None
    # Live chat-administrator check, never the stored admin list
    is_admin: bool = False
    # joined_at of the JoinedGroup row recorded before this event, if any
    member_since: datetime | None = None
    # Bot holds the "ban users" right in the group
    can_remove_members: bool = True
    last_prompt_at: datetime | None = None
    now: datetime

    model_config = {"frozen": True}


# ----- Decision (pure logic, no I/O) -----


class AccessDecision(BaseModel):
    """Result of decide_access. Side effects are requested here and applied by the caller."""

    action: AccessAction
    reason: str = Field(..., description="Short machine-readable rule name, for logs and metrics")
    ensure_admin_subscription: bool = False
    trial_days: int | None = Field(None, description="Set only with GRANT_TRIAL")
    send_prompt: bool = Field(False, description="Informative subscribe prompt (rate-limited)")

    model_config = {"frozen": True}

    @property
    def allowed(self) -> bool:
        return self.action in (AccessAction.ALLOW, AccessAction.GRANT_TRIAL)
