"""Tests for the payment webhook routes (form-encoded POSTs through FastAPI)."""
import pytest
from fastapi.testclient import TestClient

from groupgate.db.session import get_db
from groupgate.main import app
from groupgate.models.payment import Payment
from groupgate.payments.providers.payfast import generate_signature


def _itn(**fields) -> dict[str, str]:
    data = {
        "m_payment_id": "sub_42_1760000000500",
        "pf_payment_id": "1089250",
        "payment_status": "COMPLETE",
        "item_name": "Traders subscription",
        "amount_gross": "50.00",
        "custom_str1": "42",
        "custom_str2": "-100123",
    }
    data.update(fields)
    data["signature"] = generate_signature(data)
    return data


@pytest.fixture
def client(session_factory):
    def _override():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestPaymentWebhooks:
    def test_fixed_itn_path(self, client, session_factory):
        resp = client.post("/payments/webhook/payfast-itn", data=_itn())
        assert resp.status_code == 200
        assert resp.text == "Payment processed successfully"

        with session_factory() as db:
            assert db.query(Payment).count() == 1

    def test_generic_path(self, client):
        resp = client.post("/payments/webhook/payfast", data=_itn())
        assert resp.status_code == 200
        assert resp.text == "Payment processed successfully"

    def test_redelivery_is_idempotent(self, client, session_factory):
        client.post("/payments/webhook/payfast-itn", data=_itn())
        resp = client.post("/payments/webhook/payfast", data=_itn())
        assert resp.status_code == 200
        assert resp.text == "Payment already processed"

        with session_factory() as db:
            assert db.query(Payment).count() == 1

    def test_unknown_provider(self, client):
        resp = client.post("/payments/webhook/stripe", data=_itn())
        assert resp.status_code == 404

    def test_invalid_signature(self, client, session_factory):
        itn = _itn()
        itn["amount_gross"] = "1.00"
        resp = client.post("/payments/webhook/payfast-itn", data=itn)
        assert resp.status_code == 400
        assert resp.text == "Invalid notification"

        with session_factory() as db:
            assert db.query(Payment).count() == 0

    def test_cancellation(self, client):
        resp = client.post("/payments/webhook/payfast-itn", data=_itn(payment_status="CANCELLED"))
        assert resp.status_code == 200
        assert resp.text == "Subscription cancellation acknowledged"

    def test_status(self, client):
        resp = client.get("/payments/webhook/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "active"
        assert body["providers"] == ["payfast"]
        assert body["default"] == "payfast"


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.json() == {"status": "ok"}

    def test_request_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"
