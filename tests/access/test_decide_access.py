"""
Unit tests for decide_access: pure rules, no store.
"""
import itertools
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from groupgate.access.access import decide_access, in_grace_period, is_existing_member, is_trial_eligible
from groupgate.access.models import (
    AccessAction,
    AccessContext,
    EventKind,
    PolicySnapshot,
    SubscriptionSnapshot,
)

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
LONG_AGO = NOW - timedelta(days=90)


def _policy(**kwargs) -> PolicySnapshot:
    data = dict(
        group_id=-1001,
        group_title="Traders",
        is_registered=True,
        subscription_required=True,
        subscription_price=Decimal("50.00"),
        monetization_date=NOW - timedelta(days=10),
        existing_user_grace_period_hours=24,
    )
    data.update(kwargs)
    return PolicySnapshot(**data)


def _ctx(**kwargs) -> AccessContext:
    data = dict(
        user_id=42,
        group_id=-1001,
        event_kind=EventKind.MESSAGE,
        policy=_policy(),
        now=NOW,
    )
    data.update(kwargs)
    return AccessContext(**data)


def _active_sub(**kwargs) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(is_subscribed=True, subscription_expires_at=NOW + timedelta(days=5), **kwargs)


def _expired_sub(**kwargs) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(is_subscribed=True, subscription_expires_at=NOW - timedelta(seconds=1), **kwargs)


@patch("groupgate.access.access.get_prompt_interval_seconds", return_value=3600)
class TestDecideAccess(unittest.TestCase):
    """Rule order and each rule's outcome."""

    def test_unknown_group_allows(self, *_):
        decision = decide_access(_ctx(policy=None))
        self.assertEqual(decision.action, AccessAction.ALLOW)
        self.assertEqual(decision.reason, "not_monetized")
        self.assertFalse(decision.send_prompt)

    def test_unregistered_group_allows_even_with_restrictions(self, *_):
        policy = _policy(is_registered=False, subscription_required=False, restrict_non_subs_viewing=True)
        decision = decide_access(_ctx(policy=policy))
        self.assertEqual(decision.reason, "not_monetized")

    def test_subscription_not_required_allows(self, *_):
        decision = decide_access(_ctx(policy=_policy(subscription_required=False, restrict_non_subs_sending=True)))
        self.assertEqual(decision.action, AccessAction.ALLOW)
        self.assertEqual(decision.reason, "not_monetized")

    def test_admin_without_subscription_requests_admin_sub(self, *_):
        decision = decide_access(_ctx(is_admin=True, policy=_policy(restrict_non_subs_viewing=True)))
        self.assertEqual(decision.action, AccessAction.ALLOW)
        self.assertEqual(decision.reason, "admin")
        self.assertTrue(decision.ensure_admin_subscription)

    def test_admin_with_active_subscription_writes_nothing(self, *_):
        decision = decide_access(_ctx(is_admin=True, subscription=_active_sub(is_admin_subscription=True)))
        self.assertEqual(decision.reason, "admin")
        self.assertFalse(decision.ensure_admin_subscription)

    def test_admin_flag_is_the_only_admin_signal(self, *_):
        decision = decide_access(_ctx(is_admin=False, policy=_policy(restrict_non_subs_viewing=True)))
        self.assertEqual(decision.action, AccessAction.RESTRICT_VIEW)

    def test_admin_with_expired_subscription_renews(self, *_):
        decision = decide_access(_ctx(is_admin=True, subscription=_expired_sub()))
        self.assertTrue(decision.ensure_admin_subscription)

    def test_active_subscription_allows(self, *_):
        policy = _policy(restrict_non_subs_viewing=True, restrict_non_subs_sending=True)
        decision = decide_access(_ctx(policy=policy, subscription=_active_sub()))
        self.assertEqual(decision.action, AccessAction.ALLOW)
        self.assertEqual(decision.reason, "subscribed")

    def test_expiry_boundary_is_exclusive(self, *_):
        sub = SubscriptionSnapshot(is_subscribed=True, subscription_expires_at=NOW)
        decision = decide_access(_ctx(policy=_policy(restrict_non_subs_sending=True), subscription=sub))
        self.assertEqual(decision.action, AccessAction.RESTRICT_SEND)

    def test_flag_off_subscription_not_active(self, *_):
        sub = SubscriptionSnapshot(is_subscribed=False, subscription_expires_at=NOW + timedelta(days=3))
        decision = decide_access(_ctx(policy=_policy(restrict_non_subs_sending=True), subscription=sub))
        self.assertEqual(decision.action, AccessAction.RESTRICT_SEND)

    def test_recorded_member_inside_grace_allows(self, *_):
        policy = _policy(monetization_date=NOW - timedelta(hours=2), restrict_non_subs_viewing=True)
        decision = decide_access(_ctx(policy=policy, member_since=LONG_AGO))
        self.assertEqual(decision.action, AccessAction.ALLOW)
        self.assertEqual(decision.reason, "grace_period")

    def test_grace_needs_recorded_membership(self, *_):
        policy = _policy(monetization_date=NOW - timedelta(hours=2), restrict_non_subs_viewing=True)
        decision = decide_access(_ctx(policy=policy, event_kind=EventKind.MEMBER_JOIN))
        self.assertEqual(decision.action, AccessAction.RESTRICT_VIEW)

    def test_member_recorded_after_monetization_gets_no_grace(self, *_):
        policy = _policy(monetization_date=NOW - timedelta(hours=2), restrict_non_subs_sending=True)
        ctx = _ctx(policy=policy, member_since=NOW - timedelta(hours=1))
        self.assertFalse(is_existing_member(ctx))
        self.assertEqual(decide_access(ctx).action, AccessAction.RESTRICT_SEND)

    def test_grace_ended(self, *_):
        policy = _policy(monetization_date=NOW - timedelta(hours=25), restrict_non_subs_sending=True)
        decision = decide_access(_ctx(policy=policy, member_since=LONG_AGO))
        self.assertEqual(decision.action, AccessAction.RESTRICT_SEND)

    def test_trial_on_first_join(self, *_):
        policy = _policy(user_trial_enabled=True, user_trial_days=7, restrict_non_subs_viewing=True)
        decision = decide_access(_ctx(policy=policy, event_kind=EventKind.MEMBER_JOIN))
        self.assertEqual(decision.action, AccessAction.GRANT_TRIAL)
        self.assertEqual(decision.trial_days, 7)
        self.assertTrue(decision.allowed)

    def test_no_trial_on_message(self, *_):
        policy = _policy(user_trial_enabled=True, user_trial_days=7)
        decision = decide_access(_ctx(policy=policy, event_kind=EventKind.MESSAGE))
        self.assertNotEqual(decision.action, AccessAction.GRANT_TRIAL)

    def test_no_second_trial_after_expiry(self, *_):
        policy = _policy(user_trial_enabled=True, user_trial_days=7, restrict_non_subs_viewing=True)
        ctx = _ctx(policy=policy, event_kind=EventKind.MEMBER_JOIN, subscription=_expired_sub(is_trial=True))
        self.assertFalse(is_trial_eligible(ctx))
        self.assertEqual(decide_access(ctx).action, AccessAction.RESTRICT_VIEW)

    def test_trial_with_zero_days_not_granted(self, *_):
        policy = _policy(user_trial_enabled=True, user_trial_days=0)
        decision = decide_access(_ctx(policy=policy, event_kind=EventKind.MEMBER_JOIN))
        self.assertNotEqual(decision.action, AccessAction.GRANT_TRIAL)

    def test_viewing_restriction_removes(self, *_):
        decision = decide_access(_ctx(policy=_policy(restrict_non_subs_viewing=True)))
        self.assertEqual(decision.action, AccessAction.RESTRICT_VIEW)
        self.assertFalse(decision.allowed)

    def test_viewing_restriction_without_removal_right_falls_back(self, *_):
        policy = _policy(restrict_non_subs_viewing=True, restrict_non_subs_sending=True)
        decision = decide_access(_ctx(policy=policy, can_remove_members=False))
        self.assertEqual(decision.action, AccessAction.RESTRICT_SEND)

    def test_viewing_restriction_without_right_and_no_send_rule_prompts(self, *_):
        decision = decide_access(_ctx(policy=_policy(restrict_non_subs_viewing=True), can_remove_members=False))
        self.assertEqual(decision.action, AccessAction.ALLOW)
        self.assertEqual(decision.reason, "prompt_only")

    def test_sending_restriction_only_on_messages(self, *_):
        policy = _policy(restrict_non_subs_sending=True)
        self.assertEqual(decide_access(_ctx(policy=policy)).action, AccessAction.RESTRICT_SEND)
        join = decide_access(_ctx(policy=policy, event_kind=EventKind.MEMBER_JOIN))
        self.assertEqual(join.action, AccessAction.ALLOW)

    def test_no_restrictions_prompts_once_per_interval(self, *_):
        first = decide_access(_ctx(last_prompt_at=None))
        self.assertEqual(first.action, AccessAction.ALLOW)
        self.assertTrue(first.send_prompt)

        recent = decide_access(_ctx(last_prompt_at=NOW - timedelta(minutes=10)))
        self.assertFalse(recent.send_prompt)

        stale = decide_access(_ctx(last_prompt_at=NOW - timedelta(hours=1)))
        self.assertTrue(stale.send_prompt)

    def test_restrictions_never_prompt(self, *_):
        decision = decide_access(_ctx(policy=_policy(restrict_non_subs_sending=True)))
        self.assertFalse(decision.send_prompt)


class TestGracePeriod(unittest.TestCase):
    def test_no_monetization_date(self):
        self.assertFalse(in_grace_period(_ctx(policy=_policy(monetization_date=None))))

    def test_window_end_is_exclusive(self):
        policy = _policy(monetization_date=NOW - timedelta(hours=24), existing_user_grace_period_hours=24)
        self.assertFalse(in_grace_period(_ctx(policy=policy)))

    def test_zero_hours_disables_grace(self):
        policy = _policy(monetization_date=NOW, existing_user_grace_period_hours=0)
        self.assertFalse(in_grace_period(_ctx(policy=policy)))


@patch("groupgate.access.access.get_prompt_interval_seconds", return_value=3600)
class TestDecisionTable(unittest.TestCase):
    """Every combination of flags: the outcome follows the rule order."""

    def test_cross_product(self, *_):
        flags = itertools.product(
            [False, True],  # is_admin
            [None, "active", "expired"],  # subscription
            [False, True],  # recorded member inside grace window
            [False, True],  # trial enabled
            [False, True],  # restrict viewing
            [False, True],  # restrict sending
            [False, True],  # bot can remove
            list(EventKind),
        )
        for is_admin, sub, in_grace, trial, view, send, can_remove, kind in flags:
            with self.subTest(admin=is_admin, sub=sub, grace=in_grace, trial=trial, view=view, send=send,
                              can_remove=can_remove, kind=kind.value):
                policy = _policy(
                    monetization_date=NOW - timedelta(hours=1) if in_grace else NOW - timedelta(days=30),
                    user_trial_enabled=trial,
                    user_trial_days=5,
                    restrict_non_subs_viewing=view,
                    restrict_non_subs_sending=send,
                )
                subscription = {"active": _active_sub(), "expired": _expired_sub(), None: None}[sub]
                decision = decide_access(_ctx(
                    policy=policy,
                    subscription=subscription,
                    is_admin=is_admin,
                    member_since=LONG_AGO,
                    can_remove_members=can_remove,
                    event_kind=kind,
                ))

                if is_admin:
                    expected = AccessAction.ALLOW
                    self.assertEqual(decision.ensure_admin_subscription, sub != "active")
                elif sub == "active" or in_grace:
                    expected = AccessAction.ALLOW
                elif trial and sub is None and kind == EventKind.MEMBER_JOIN:
                    expected = AccessAction.GRANT_TRIAL
                elif view and can_remove:
                    expected = AccessAction.RESTRICT_VIEW
                elif send and kind == EventKind.MESSAGE:
                    expected = AccessAction.RESTRICT_SEND
                else:
                    expected = AccessAction.ALLOW
                self.assertEqual(decision.action, expected)
                if not is_admin:
                    self.assertFalse(decision.ensure_admin_subscription)


if __name__ == "__main__":
    unittest.main()
