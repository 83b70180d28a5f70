"""
HTTP surface tests: routers, caller headers and error mapping
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import api_server
from api_server import app
from database import get_db
from services.ledger_service import LedgerService
from services.notification_service import notification_service


@pytest.fixture
def client(session_factory, monkeypatch):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(notification_service, "enabled", False)
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


def headers(user, admin=False):
    result = {"X-User-Id": str(user.id)}
    if admin:
        result["X-User-Roles"] = "user,admin"
    return result


class TestCallerHeaders:

    def test_missing_user_header(self, client):
        response = client.get("/wallet/balance")
        assert response.status_code == 400
        assert response.json()["message"] == "X-User-Id header is required"

    def test_non_numeric_user_header(self, client):
        response = client.get("/wallet/balance", headers={"X-User-Id": "alice"})
        assert response.status_code == 400
        assert response.json()["code"] == "BAD_REQUEST"


class TestSkillRequestRoutes:

    def test_send_accept_flow(self, client, alice, bob, guitar):
        created = client.post("/skill-requests", json={"skill_id": guitar.id, "message": "Hi"}, headers=headers(alice))
        assert created.status_code == 201
        body = created.json()
        assert body["status"] == "pending"
        assert body["receiver_id"] == bob.id

        accepted = client.post(f"/skill-requests/{body['id']}/accept", headers=headers(bob))
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"

        sent = client.get("/skill-requests/sent", headers=headers(alice)).json()
        received = client.get("/skill-requests/received", headers=headers(bob)).json()
        assert [r["id"] for r in sent] == [body["id"]]
        assert [r["id"] for r in received] == [body["id"]]

    def test_outsider_cannot_read_request(self, client, market, alice, guitar):
        carol = market.user("Carol")
        created = client.post("/skill-requests", json={"skill_id": guitar.id}, headers=headers(alice)).json()

        response = client.get(f"/skill-requests/{created['id']}", headers=headers(carol))
        assert response.status_code == 400
        assert response.json()["code"] == "OPERATION_NOT_ALLOWED"

    def test_long_message_is_a_validation_error(self, client, alice, guitar):
        response = client.post(
            "/skill-requests", json={"skill_id": guitar.id, "message": "x" * 501}, headers=headers(alice)
        )
        assert response.status_code == 400
        assert response.json()["message"].startswith("message:")


class TestBookingRoutes:

    def book(self, client, alice, accepted):
        return client.post(
            "/bookings",
            json={
                "skill_request_id": accepted.id,
                "start_time": "2030-03-04T10:00:00",
                "end_time": "2030-03-04T11:30:00",
            },
            headers=headers(alice),
        )

    def test_full_paid_lifecycle(self, client, alice, bob, accepted):
        assert client.post("/wallet/deposit", json={"amount": "1000.00"}, headers=headers(alice)).status_code == 201

        created = self.book(client, alice, accepted)
        assert created.status_code == 201
        booking = created.json()
        assert booking["status"] == "pending"
        assert booking["total_amount"] == "750.00"
        assert booking["duration_minutes"] == 90

        confirmed = client.post(f"/bookings/{booking['id']}/confirm", headers=headers(bob))
        assert confirmed.json()["status"] == "confirmed"

        balance = client.get("/wallet/balance", headers=headers(alice)).json()
        assert balance["balance"] == "250.00"
        assert balance["escrow_held"] == "750.00"

        assert client.post(f"/bookings/{booking['id']}/start", headers=headers(bob)).json()["status"] == "in_progress"
        assert client.post(f"/bookings/{booking['id']}/complete", headers=headers(bob)).json()["status"] == "completed"

        assert client.get("/wallet/balance", headers=headers(bob)).json()["balance"] == "750.00"
        assert client.get("/wallet/balance", headers=headers(alice)).json()["escrow_held"] == "0.00"

        types = [t["transaction_type"] for t in client.get("/wallet/transactions", headers=headers(alice)).json()]
        assert sorted(types) == ["deposit", "escrow", "release"]

    def test_unfunded_confirmation_is_rejected(self, client, alice, bob, accepted):
        booking = self.book(client, alice, accepted).json()

        response = client.post(f"/bookings/{booking['id']}/confirm", headers=headers(bob))
        assert response.status_code == 400
        assert response.json()["code"] == "INSUFFICIENT_BALANCE"
        assert client.get(f"/bookings/{booking['id']}", headers=headers(alice)).json()["status"] == "pending"

    def test_overlapping_booking_conflicts(self, client, market, alice, bob, guitar, accepted):
        assert self.book(client, alice, accepted).status_code == 201

        carol = market.user("Carol")
        other = market.accepted_request(carol, guitar)
        response = client.post(
            "/bookings",
            json={
                "skill_request_id": other.id,
                "start_time": "2030-03-04T11:00:00",
                "end_time": "2030-03-04T12:00:00",
            },
            headers=headers(carol),
        )
        assert response.status_code == 409
        assert response.json()["message"] == "Provider is not available for this slot"

    def test_cancel_requires_reason(self, client, alice, accepted):
        booking = self.book(client, alice, accepted).json()

        response = client.post(f"/bookings/{booking['id']}/cancel", json={"reason": " "}, headers=headers(alice))
        assert response.status_code == 400

        response = client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Busy"}, headers=headers(alice))
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancelled_by"] == "user"

    def test_availability(self, client, alice, bob, accepted):
        self.book(client, alice, accepted)
        busy = client.get(
            f"/bookings/availability/{bob.id}",
            params={"start": "2030-03-04T11:00:00", "end": "2030-03-04T11:15:00"},
            headers=headers(alice),
        ).json()
        free = client.get(
            f"/bookings/availability/{bob.id}",
            params={"start": "2030-03-05T11:00:00", "end": "2030-03-05T12:00:00"},
            headers=headers(alice),
        ).json()
        assert busy["available"] is False
        assert free["available"] is True

    def test_unknown_booking(self, client, alice):
        response = client.get("/bookings/424242", headers=headers(alice))
        assert response.status_code == 404
        assert response.json()["message"] == "Booking not found"


class TestWalletRoutes:

    def test_non_positive_amount_is_rejected(self, client, alice):
        response = client.post("/wallet/deposit", json={"amount": "-5"}, headers=headers(alice))
        assert response.status_code == 400
        assert response.json()["message"].startswith("amount:")

    def test_reconcile_is_admin_only(self, client, alice):
        response = client.post(f"/wallet/admin/reconcile/{alice.id}", headers=headers(alice))
        assert response.status_code == 400

        response = client.post(f"/wallet/admin/reconcile/{alice.id}", headers=headers(alice, admin=True))
        assert response.status_code == 200
        assert response.json()["user_id"] == alice.id

    def test_unexpected_errors_are_generic(self, client, alice):
        with patch.object(LedgerService, "get_wallet_balance", side_effect=RuntimeError("disk on fire")):
            response = client.get("/wallet/balance", headers=headers(alice))

        assert response.status_code == 500
        assert "disk on fire" not in response.text
        assert response.json()["code"] == "INTERNAL_SERVER_ERROR"


class TestHealth:

    def test_degraded_when_database_is_down(self, client):
        with patch.object(api_server, "test_connection", return_value=False):
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["database"] == "unavailable"
