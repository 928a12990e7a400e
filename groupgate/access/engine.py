"""
Execution: AccessControlEngine reads the store, calls decide_access and applies the
store-side effects (admin subscription, trial, membership, prompt timestamp).
Chat-side effects (delete message, remove member, DM) stay with the transport.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from groupgate.access.access import decide_access
from groupgate.access.models import (
    AccessAction,
    AccessContext,
    AccessDecision,
    EventKind,
    PolicySnapshot,
    SubscriptionSnapshot,
)
from groupgate.models.group_policy import GroupPolicy
from groupgate.models.user import User
from groupgate.services.entitlements.service import EntitlementService
from groupgate.services.groups.service import GroupService
from groupgate.services.users.service import UserService
from groupgate.utils.metrics import access_decisions_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatEvent:
    user_id: int
    group_id: int
    kind: EventKind
    group_title: str | None = None
    username: str | None = None
    first_name: str | None = None


class AccessControlEngine:
    def __init__(self, db: Session):
        self.db = db
        self.users = UserService(db)
        self.groups = GroupService(db)
        self.entitlements = EntitlementService(db)

    def evaluate(
        self,
        event: ChatEvent,
        is_admin: bool = False,
        can_remove_members: bool = True,
        now: datetime | None = None,
    ) -> AccessDecision:
        now = now or datetime.now(timezone.utc)
        policy = self.groups.get(event.group_id)
        user = self.users.get_or_create_user(event.user_id, event.username, event.first_name)
        subscription = self.entitlements.get_subscription(user, event.group_id)

        if policy is not None:
            self.groups.sync_admin(policy, event.user_id, is_admin)
        membership = self.users.get_membership(user, event.group_id)

        ctx = AccessContext(
            user_id=event.user_id,
            group_id=event.group_id,
            event_kind=event.kind,
            policy=PolicySnapshot.model_validate(policy) if policy is not None else None,
            subscription=SubscriptionSnapshot.model_validate(subscription) if subscription is not None else None,
            is_admin=is_admin,
            member_since=membership.joined_at if membership is not None else None,
            can_remove_members=can_remove_members,
            last_prompt_at=user.last_subscription_prompt_at,
            now=now,
        )
        decision = decide_access(ctx)
        self._apply(decision, user, policy, event, now)

        access_decisions_total.labels(action=decision.action.value).inc()
        logger.info(
            "access_decision",
            extra={
                "user_id": event.user_id,
                "group_id": event.group_id,
                "action": f"{decision.action.value}:{decision.reason}",
            },
        )
        return decision

    def _apply(
        self,
        decision: AccessDecision,
        user: User,
        policy: GroupPolicy | None,
        event: ChatEvent,
        now: datetime,
    ) -> None:
        title = event.group_title or (policy.group_title if policy is not None else None)

        if decision.ensure_admin_subscription:
            self.entitlements.ensure_admin_subscription(user, event.group_id, title, now)

        if decision.action == AccessAction.GRANT_TRIAL:
            self.entitlements.grant_trial(user, event.group_id, decision.trial_days, title, now)

        if decision.allowed:
            self.users.record_membership(user, event.group_id, title, joined_at=now)
        elif decision.action == AccessAction.RESTRICT_VIEW:
            self.users.forget_membership(user.id, event.group_id)

        if decision.send_prompt:
            self.users.mark_prompted(user, now)
