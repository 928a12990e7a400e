"""Tests for AccessControlEngine: decisions plus their store-side effects on SQLite."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from groupgate.access import AccessAction, AccessControlEngine, ChatEvent, EventKind
from groupgate.models.user import GroupSubscription, JoinedGroup, User
from groupgate.services.groups.service import GroupService
from groupgate.services.users.service import UserService

GROUP = -100123
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _monetized_group(db, **overrides):
    policy = GroupService(db).get_or_create(GROUP, "Traders", added_by=1)
    policy.is_registered = True
    policy.subscription_required = True
    policy.subscription_price = Decimal("50.00")
    policy.monetization_date = NOW - timedelta(days=30)
    for key, value in overrides.items():
        setattr(policy, key, value)
    db.flush()
    return policy


def _event(user_id=42, kind=EventKind.MESSAGE):
    return ChatEvent(user_id=user_id, group_id=GROUP, kind=kind, group_title="Traders", username="alice")


def _subs(db, telegram_id):
    return (
        db.query(GroupSubscription)
        .join(User, User.id == GroupSubscription.user_id)
        .filter(User.telegram_id == telegram_id)
        .all()
    )


class TestAdmin:
    def test_admin_gets_one_subscription_across_events(self, db):
        _monetized_group(db, restrict_non_subs_viewing=True)
        engine = AccessControlEngine(db)

        for _ in range(3):
            decision = engine.evaluate(_event(user_id=7), is_admin=True, now=NOW)
            assert decision.action == AccessAction.ALLOW

        subs = _subs(db, 7)
        assert len(subs) == 1
        assert subs[0].is_admin_subscription is True
        assert subs[0].payment_amount == Decimal("0")
        assert subs[0].is_active(NOW)

    def test_admin_is_remembered_on_policy(self, db):
        _monetized_group(db)
        AccessControlEngine(db).evaluate(_event(user_id=7), is_admin=True, now=NOW)
        assert GroupService(db).require(GROUP).is_admin(7)

    def test_stored_admin_list_does_not_grant_access(self, db):
        # user 1 added the bot and is on the stored list, but the live check says otherwise
        _monetized_group(db, restrict_non_subs_viewing=True)
        decision = AccessControlEngine(db).evaluate(_event(user_id=1), is_admin=False, now=NOW)

        assert decision.action == AccessAction.RESTRICT_VIEW
        assert _subs(db, 1) == []
        assert not GroupService(db).require(GROUP).is_admin(1)

    def test_demoted_admin_loses_admin_treatment(self, db):
        _monetized_group(db, restrict_non_subs_sending=True)
        engine = AccessControlEngine(db)
        engine.evaluate(_event(user_id=7), is_admin=True, now=NOW)

        later = NOW + timedelta(days=400)
        decision = engine.evaluate(_event(user_id=7), is_admin=False, now=later)

        assert decision.action == AccessAction.RESTRICT_SEND
        assert not GroupService(db).require(GROUP).is_admin(7)


class TestTrial:
    def test_trial_granted_once_on_duplicate_joins(self, db):
        _monetized_group(db, user_trial_enabled=True, user_trial_days=7, restrict_non_subs_viewing=True)
        engine = AccessControlEngine(db)

        first = engine.evaluate(_event(kind=EventKind.MEMBER_JOIN), now=NOW)
        second = engine.evaluate(_event(kind=EventKind.MEMBER_JOIN), now=NOW)

        assert first.action == AccessAction.GRANT_TRIAL
        assert second.action == AccessAction.ALLOW
        assert second.reason == "subscribed"
        subs = _subs(db, 42)
        assert len(subs) == 1
        assert subs[0].is_trial is True
        assert subs[0].subscription_expires_at == NOW + timedelta(days=7)

    def test_trial_not_reissued_after_expiry(self, db):
        _monetized_group(db, user_trial_enabled=True, user_trial_days=7, restrict_non_subs_viewing=True)
        engine = AccessControlEngine(db)
        engine.evaluate(_event(kind=EventKind.MEMBER_JOIN), now=NOW)

        later = NOW + timedelta(days=8)
        decision = engine.evaluate(_event(kind=EventKind.MEMBER_JOIN), now=later)
        assert decision.action == AccessAction.RESTRICT_VIEW
        assert len(_subs(db, 42)) == 1


class TestMembership:
    def test_allowed_event_records_membership(self, db):
        _monetized_group(db, subscription_required=False)
        AccessControlEngine(db).evaluate(_event(), now=NOW)
        user = UserService(db).get_by_telegram_id(42)
        assert UserService(db).get_membership(user, GROUP) is not None

    def test_removed_member_is_forgotten(self, db):
        _monetized_group(db, restrict_non_subs_viewing=True)
        user = UserService(db).get_or_create_user(42)
        UserService(db).record_membership(user, GROUP, "Traders")
        db.flush()

        decision = AccessControlEngine(db).evaluate(_event(), now=NOW)

        assert decision.action == AccessAction.RESTRICT_VIEW
        assert db.query(JoinedGroup).filter(JoinedGroup.user_id == user.id).count() == 0

    def test_recorded_member_in_grace_window(self, db):
        _monetized_group(db, monetization_date=NOW - timedelta(hours=1), restrict_non_subs_viewing=True)
        user = UserService(db).get_or_create_user(42)
        UserService(db).record_membership(user, GROUP, joined_at=NOW - timedelta(days=2))
        db.flush()

        decision = AccessControlEngine(db).evaluate(_event(), now=NOW)
        assert decision.reason == "grace_period"

    def test_join_after_monetization_gets_no_grace_on_later_messages(self, db):
        _monetized_group(db, monetization_date=NOW - timedelta(hours=1), restrict_non_subs_sending=True)
        engine = AccessControlEngine(db)

        join = engine.evaluate(_event(kind=EventKind.MEMBER_JOIN), now=NOW)
        message = engine.evaluate(_event(), now=NOW + timedelta(minutes=1))

        assert join.reason == "prompt_only"
        assert message.action == AccessAction.RESTRICT_SEND

    def test_newcomer_in_grace_window_is_not_covered(self, db):
        _monetized_group(db, monetization_date=NOW - timedelta(hours=1), restrict_non_subs_viewing=True)
        decision = AccessControlEngine(db).evaluate(_event(kind=EventKind.MEMBER_JOIN), now=NOW)
        assert decision.action == AccessAction.RESTRICT_VIEW

    def test_without_removal_right_viewing_falls_back_to_send_rule(self, db):
        _monetized_group(db, restrict_non_subs_viewing=True, restrict_non_subs_sending=True)
        decision = AccessControlEngine(db).evaluate(_event(), can_remove_members=False, now=NOW)
        assert decision.action == AccessAction.RESTRICT_SEND


class TestPrompts:
    def test_prompt_rate_limited_per_user(self, db):
        _monetized_group(db)
        engine = AccessControlEngine(db)

        first = engine.evaluate(_event(), now=NOW)
        second = engine.evaluate(_event(), now=NOW + timedelta(minutes=5))
        third = engine.evaluate(_event(), now=NOW + timedelta(hours=1, minutes=1))

        assert first.send_prompt is True
        assert second.send_prompt is False
        assert third.send_prompt is True
        assert UserService(db).get_by_telegram_id(42).last_subscription_prompt_at == NOW + timedelta(hours=1, minutes=1)

    def test_unmonetized_group_never_prompts(self, db):
        GroupService(db).get_or_create(GROUP, "Free chat")
        decision = AccessControlEngine(db).evaluate(_event(), now=NOW)
        assert decision.reason == "not_monetized"
        assert decision.send_prompt is False

    @pytest.mark.parametrize("kind", list(EventKind))
    def test_unknown_group_allows(self, db, kind):
        decision = AccessControlEngine(db).evaluate(_event(kind=kind), now=NOW)
        assert decision.action == AccessAction.ALLOW
