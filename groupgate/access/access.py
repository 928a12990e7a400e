"""
Decision only: decide_access(ctx) -> AccessDecision.
Pure function, no I/O. Rules short-circuit in this order:
unmonetized -> admin -> active subscription -> grace period -> first-join trial -> restriction.
"""
from __future__ import annotations

from datetime import timedelta

from groupgate.access.config import get_prompt_interval_seconds
from groupgate.access.models import AccessAction, AccessContext, AccessDecision, EventKind


def in_grace_period(ctx: AccessContext) -> bool:
    policy = ctx.policy
    if policy is None or policy.monetization_date is None:
        return False
    return ctx.now < policy.monetization_date + timedelta(hours=policy.existing_user_grace_period_hours)


def is_existing_member(ctx: AccessContext) -> bool:
    """Membership recorded before monetization started; later joins never get grace."""
    policy = ctx.policy
    return bool(
        policy is not None
        and policy.monetization_date is not None
        and ctx.member_since is not None
        and ctx.member_since < policy.monetization_date
    )


def is_trial_eligible(ctx: AccessContext) -> bool:
    """First join ever: trials are never re-issued once any entry exists for the group."""
    policy = ctx.policy
    return bool(
        policy is not None
        and policy.user_trial_enabled
        and policy.user_trial_days > 0
        and ctx.event_kind == EventKind.MEMBER_JOIN
        and ctx.subscription is None
    )


def _prompt_due(ctx: AccessContext) -> bool:
    if ctx.last_prompt_at is None:
        return True
    return ctx.now - ctx.last_prompt_at >= timedelta(seconds=get_prompt_interval_seconds())


def decide_access(ctx: AccessContext) -> AccessDecision:
    policy = ctx.policy

    if policy is None or not policy.is_registered or not policy.subscription_required:
        return AccessDecision(action=AccessAction.ALLOW, reason="not_monetized")

    if ctx.is_admin:
        has_active = ctx.subscription is not None and ctx.subscription.is_active(ctx.now)
        return AccessDecision(
            action=AccessAction.ALLOW,
            reason="admin",
            ensure_admin_subscription=not has_active,
        )

    if ctx.subscription is not None and ctx.subscription.is_active(ctx.now):
        return AccessDecision(action=AccessAction.ALLOW, reason="subscribed")

    if is_existing_member(ctx) and in_grace_period(ctx):
        return AccessDecision(action=AccessAction.ALLOW, reason="grace_period")

    if is_trial_eligible(ctx):
        return AccessDecision(
            action=AccessAction.GRANT_TRIAL,
            reason="trial",
            trial_days=policy.user_trial_days,
        )

    # Viewing restriction needs the removal right; without it fall back to the send rule.
    if policy.restrict_non_subs_viewing and ctx.can_remove_members:
        return AccessDecision(action=AccessAction.RESTRICT_VIEW, reason="restrict_viewing")

    if policy.restrict_non_subs_sending and ctx.event_kind == EventKind.MESSAGE:
        return AccessDecision(action=AccessAction.RESTRICT_SEND, reason="restrict_sending")

    return AccessDecision(action=AccessAction.ALLOW, reason="prompt_only", send_prompt=_prompt_due(ctx))
