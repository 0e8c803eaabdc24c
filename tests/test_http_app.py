# tests/test_http_app.py
"""Endpoint tests for vamo/transport/http_app.py (no database, no Expo)."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import PICKUP_LAT, PICKUP_LNG, FakePushGateway, make_recipient, token_for
from vamo.core.dispatch.domain import RecipientRole
from vamo.core.dispatch.orchestrator import DispatchOrchestrator
from vamo.core.dispatch.receipts import PendingTicketRegistry
from vamo.core.dispatch.selector import GeoCandidateSelector
from vamo.infra.memory_recipient_store import InMemoryRecipientStore
from vamo.infra.ttl_store import InMemoryTTLStore
from vamo.transport.http_app import app, get_orchestrator
from test_security import STRONG_TOKEN, _make_mock_settings

AUTH = {"Authorization": f"Bearer {STRONG_TOKEN}"}


def ride_body(**overrides):
    body = {
        "requestId": "req-1",
        "tripId": 12,
        "clientId": 3,
        "pickupAddress": "Plateau",
        "destinationAddress": "Cocody",
        "pickupLatitude": PICKUP_LAT,
        "pickupLongitude": PICKUP_LNG,
        "estimatedPrice": 2500,
        "paymentMethod": "cash",
    }
    body.update(overrides)
    return body


@pytest.fixture
def push_gateway():
    return FakePushGateway()


@pytest.fixture
def recipient_store():
    return InMemoryRecipientStore()


@pytest.fixture
def client(recipient_store, push_gateway, fixed_clock):
    orchestrator = DispatchOrchestrator(
        candidates=recipient_store,
        recipients=recipient_store,
        gateway=push_gateway,
        registry=PendingTicketRegistry(InMemoryTTLStore(), ttl=3600),
        selector=GeoCandidateSelector(recipient_store, clock=fixed_clock),
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with patch("vamo.transport.security.settings", _make_mock_settings()):
        yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# Public & auth
# ============================================================================

class TestPublicAndAuth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_notifications_require_token(self, client, push_gateway):
        resp = client.post("/notifications/ride-request", json=ride_body())
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Authentication required"}
        assert push_gateway.sent_batches == []

    def test_wrong_token_rejected(self, client):
        resp = client.post(
            "/notifications/ride-request", json=ride_body(),
            headers={"Authorization": "Bearer wrong"},
        )
        assert resp.status_code == 401

    def test_ready_without_pool_is_503(self, client):
        resp = client.get("/ready")
        assert resp.status_code == 503
        assert resp.json() == {"status": "not_ready"}

    def test_unknown_route_is_404(self, client):
        resp = client.get("/admin/secrets")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Not found"}

    def test_metrics_with_token(self, client):
        resp = client.get("/metrics", headers=AUTH)
        assert resp.status_code == 200
        assert "counters" in resp.json()


# ============================================================================
# Proximity offers
# ============================================================================

class TestRideAndDeliveryRequests:
    def test_ride_request_dispatches_to_nearest_drivers(self, client, recipient_store, push_gateway):
        recipient_store.add(make_recipient("1", lat=PICKUP_LAT + 0.001))
        recipient_store.add(make_recipient("2", lat=PICKUP_LAT + 0.002, preferences={"ride_request": False}))
        recipient_store.add(make_recipient("3", lat=PICKUP_LAT + 0.003))

        resp = client.post("/notifications/ride-request", json=ride_body(maxDrivers=3), headers=AUTH)

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["requested_count"] == 3
        assert data["eligible_count"] == 3
        assert data["sent_count"] == 2
        assert data["losses"]["preference_suppressed"] == ["2"]
        assert [t["recipient_id"] for t in data["tickets"]] == ["1", "3"]

        message = push_gateway.sent_batches[0][0]
        assert message.data["type"] == "ride_request"
        assert message.data["pickup"] == "Plateau"
        assert message.sound == "ride-request.wav"

    def test_no_drivers_nearby(self, client, push_gateway):
        resp = client.post("/notifications/ride-request", json=ride_body(), headers=AUTH)

        assert resp.status_code == 200
        data = resp.json()
        assert data["sent_count"] == 0
        assert data["requested_count"] == 5
        assert push_gateway.sent_batches == []

    def test_delivery_request_targets_couriers(self, client, recipient_store):
        recipient_store.add(make_recipient("1"))
        recipient_store.add(make_recipient("9", role=RecipientRole.COURIER))

        resp = client.post(
            "/notifications/delivery-request",
            json=ride_body(deliveryId=8, packageSize="small"),
            headers=AUTH,
        )

        assert resp.status_code == 200
        assert [t["recipient_id"] for t in resp.json()["tickets"]] == ["9"]

    @pytest.mark.parametrize("overrides", [
        {"pickupLatitude": 123.0},
        {"estimatedPrice": 0},
        {"pickupAddress": ""},
        {"maxDrivers": 0},
    ])
    def test_invalid_body_is_400(self, client, overrides, push_gateway):
        resp = client.post("/notifications/ride-request", json=ride_body(**overrides), headers=AUTH)

        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert push_gateway.sent_batches == []


# ============================================================================
# Single-recipient endpoints
# ============================================================================

class TestSingleRecipientEndpoints:
    def test_trip_status_to_client(self, client, recipient_store, push_gateway):
        recipient_store.add(make_recipient("3", role=RecipientRole.CLIENT))

        resp = client.post(
            "/notifications/trip-status",
            json={"clientId": 3, "tripId": 12, "status": "driver_arrived", "driverInfo": {"name": "Awa"}},
            headers=AUTH,
        )

        assert resp.status_code == 200
        assert resp.json()["sent_count"] == 1
        message = push_gateway.sent_batches[0][0]
        assert message.to == token_for("3")
        assert message.title == "Chauffeur arrivé"
        assert message.data["clientId"] == "3"
        assert message.channel_id == "trip_updates"

    def test_delivery_status_unknown_client(self, client, push_gateway):
        resp = client.post(
            "/notifications/delivery-status",
            json={"clientId": 44, "deliveryId": 8, "status": "package_collected"},
            headers=AUTH,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["sent_count"] == 0
        assert data["losses"]["missing_token"] == ["44"]
        assert push_gateway.sent_batches == []

    def test_direct_message_to_driver(self, client, recipient_store, push_gateway):
        recipient_store.add(make_recipient("7"))

        resp = client.post(
            "/notifications/send",
            json={"recipientId": "7", "role": "driver", "title": "Bonjour", "body": "Message",
                  "data": {"type": "account", "ref": "A1"}},
            headers=AUTH,
        )

        assert resp.status_code == 200
        message = push_gateway.sent_batches[0][0]
        assert message.data == {"type": "account", "ref": "A1", "driverId": "7"}

    def test_unresolvable_recipient_is_400(self, client, push_gateway):
        resp = client.post(
            "/notifications/send",
            json={"recipientId": "abc", "title": "t", "body": "b"},
            headers=AUTH,
        )

        assert resp.status_code == 400
        assert "recipient" in resp.json()["error"]
        assert push_gateway.sent_batches == []

    def test_unknown_role_is_400(self, client):
        resp = client.post(
            "/notifications/send",
            json={"recipientId": 7, "role": "pilot", "title": "t", "body": "b"},
            headers=AUTH,
        )
        assert resp.status_code == 400


# ============================================================================
# Receipts
# ============================================================================

class TestCheckReceipts:
    def test_reports_delivered_and_pending(self, client, recipient_store, push_gateway):
        recipient_store.add(make_recipient("1"))
        sent = client.post("/notifications/ride-request", json=ride_body(), headers=AUTH).json()
        ticket_id = sent["tickets"][0]["submission_id"]
        push_gateway.receipts = {
            ticket_id: {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
        }

        resp = client.post(
            "/notifications/check-receipts",
            json={"ticketIds": [ticket_id, "unknown-ticket"]},
            headers=AUTH,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["receipts"][ticket_id]["failure_kind"] == "permanent"
        assert data["pending"] == ["unknown-ticket"]
        assert data["recipients_to_invalidate"] == ["1"]

    def test_empty_id_list_is_400(self, client):
        resp = client.post("/notifications/check-receipts", json={"ticketIds": []}, headers=AUTH)
        assert resp.status_code == 400
