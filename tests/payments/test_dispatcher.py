"""Tests for WebhookDispatcher: provider routing, verification gate, idempotent settlement."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from groupgate.models.payment import Payment
from groupgate.models.user import GroupSubscription
from groupgate.payments.dispatcher import WebhookDispatcher
from groupgate.payments.errors import PersistenceError, UnknownProviderError
from groupgate.payments.providers.payfast import PayFastGateway, generate_signature
from groupgate.payments.registry import GatewayRegistry
from groupgate.services.groups.service import GroupService
from groupgate.services.payments.service import SettlementService

GROUP = -100123


def _registry(**config) -> GatewayRegistry:
    base = {
        "merchant_id": "10000100",
        "merchant_key": "46f0cd694581a",
        "passphrase": "",
        "validate_with_server": False,
    }
    base.update(config)
    registry = GatewayRegistry()
    registry.register(PayFastGateway(base), default=True)
    return registry


def _itn(passphrase: str = "", **fields) -> dict[str, str]:
    data = {
        "m_payment_id": "sub_42_1760000000500",
        "pf_payment_id": "1089250",
        "payment_status": "COMPLETE",
        "item_name": "Traders subscription",
        "amount_gross": "50.00",
        "custom_str1": "42",
        "custom_str2": str(GROUP),
    }
    data.update(fields)
    data["signature"] = generate_signature(data, passphrase)
    return data


def _recorder(record_result=True, credentials=None):
    recorder = MagicMock()
    recorder.record_payment.return_value = record_result
    recorder.credentials_for.return_value = credentials
    return recorder


class TestDispatchGates:
    def test_unknown_provider(self):
        dispatcher = WebhookDispatcher(_registry(), _recorder(), MagicMock())
        with pytest.raises(UnknownProviderError) as exc:
            dispatcher.dispatch("stripe", _itn())
        assert exc.value.available == ["payfast"]

    def test_provider_name_case_insensitive(self):
        result = WebhookDispatcher(_registry(), _recorder(), MagicMock()).dispatch("PayFast", _itn())
        assert result.status_code == 200

    def test_missing_required_fields(self):
        recorder, callback = _recorder(), MagicMock()
        itn = _itn()
        del itn["m_payment_id"]
        result = WebhookDispatcher(_registry(), recorder, callback).dispatch("payfast", itn)
        assert (result.status_code, result.message) == (400, "Missing required fields")
        recorder.record_payment.assert_not_called()

    def test_invalid_signature(self):
        recorder, callback = _recorder(), MagicMock()
        itn = _itn()
        itn["amount_gross"] = "1.00"
        result = WebhookDispatcher(_registry(), recorder, callback).dispatch("payfast", itn)
        assert (result.status_code, result.message) == (400, "Invalid notification")
        recorder.record_payment.assert_not_called()
        callback.assert_not_called()

    def test_group_credentials_used_for_verification(self):
        recorder = _recorder(credentials={"passphrase": "group-secret"})
        result = WebhookDispatcher(_registry(), recorder, MagicMock()).dispatch(
            "payfast", _itn(passphrase="group-secret")
        )
        assert result.outcome == "processed"
        recorder.credentials_for.assert_called_once_with("payfast", GROUP)

    @pytest.mark.parametrize("status", ["PENDING", "FAILED"])
    def test_non_complete_acknowledged(self, status):
        recorder, callback = _recorder(), MagicMock()
        result = WebhookDispatcher(_registry(), recorder, callback).dispatch("payfast", _itn(payment_status=status))
        assert (result.status_code, result.message) == (200, "Notification received")
        recorder.record_payment.assert_not_called()
        callback.assert_not_called()

    @pytest.mark.parametrize("status", ["CANCELLED", "SUBSCRIPTION_CANCELLED"])
    def test_cancellation_acknowledged(self, status):
        callback = MagicMock()
        result = WebhookDispatcher(_registry(), _recorder(), callback).dispatch("payfast", _itn(payment_status=status))
        assert (result.status_code, result.message) == (200, "Subscription cancellation acknowledged")
        callback.assert_not_called()

    def test_malformed_reference(self):
        callback = MagicMock()
        result = WebhookDispatcher(_registry(), _recorder(), callback).dispatch(
            "payfast", _itn(m_payment_id="order_1")
        )
        assert (result.status_code, result.message) == (400, "Malformed notification")
        callback.assert_not_called()

    def test_complete_payment_settled(self):
        recorder, callback = _recorder(), MagicMock()
        result = WebhookDispatcher(_registry(), recorder, callback).dispatch("payfast", _itn())
        assert (result.status_code, result.message) == (200, "Payment processed successfully")
        callback.assert_called_once_with(result.payment)
        assert result.payment.user_id == 42

    def test_duplicate_not_settled_again(self):
        callback = MagicMock()
        result = WebhookDispatcher(_registry(), _recorder(record_result=False), callback).dispatch("payfast", _itn())
        assert (result.status_code, result.message) == (200, "Payment already processed")
        callback.assert_not_called()

    def test_callback_failure_becomes_persistence_error(self):
        callback = MagicMock(side_effect=RuntimeError("boom"))
        with pytest.raises(PersistenceError):
            WebhookDispatcher(_registry(), _recorder(), callback).dispatch("payfast", _itn())


class TestSettlementStore:
    def _dispatcher(self, db):
        settlement = SettlementService(db)
        return WebhookDispatcher(_registry(), recorder=settlement, on_success=settlement.settle)

    def test_redelivery_records_once_and_extends_once(self, db):
        GroupService(db).get_or_create(GROUP, "Traders")
        dispatcher = self._dispatcher(db)

        first = dispatcher.dispatch("payfast", _itn())
        second = dispatcher.dispatch("payfast", _itn())

        assert first.outcome == "processed"
        assert second.outcome == "duplicate"
        assert db.query(Payment).count() == 1
        sub = db.query(GroupSubscription).one()
        assert sub.group_title == "Traders"
        assert sub.payment_amount == Decimal("50.00")
        expected = datetime.now(timezone.utc) + timedelta(days=30)
        assert abs(sub.subscription_expires_at - expected) < timedelta(minutes=1)

    def test_second_payment_extends_from_current_expiry(self, db):
        dispatcher = self._dispatcher(db)
        dispatcher.dispatch("payfast", _itn())
        first_expiry = db.query(GroupSubscription).one().subscription_expires_at

        dispatcher.dispatch("payfast", _itn(pf_payment_id="1089251", m_payment_id="sub_42_1760000999000"))

        sub = db.query(GroupSubscription).one()
        assert sub.subscription_expires_at == first_expiry + timedelta(days=30)
        assert db.query(Payment).count() == 2

    def test_group_credentials_from_policy(self, db):
        groups = GroupService(db)
        groups.get_or_create(GROUP, "Traders")
        groups.update_payment_credentials(GROUP, "payfast", passphrase="group-secret")

        result = self._dispatcher(db).dispatch("payfast", _itn(passphrase="group-secret"))
        assert result.outcome == "processed"

    def test_legacy_payment_without_group(self, db):
        from groupgate.services.users.service import UserService

        result = self._dispatcher(db).dispatch("payfast", _itn(custom_str2=""))
        assert result.outcome == "processed"
        user = UserService(db).get_by_telegram_id(42)
        assert user.is_subscribed is True
        assert db.query(GroupSubscription).count() == 0
