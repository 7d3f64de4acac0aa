"""HTTP and WebSocket tests against the FastAPI app, backed by the in-memory store."""

import time

import pytest
from fastapi.testclient import TestClient

from dinehub import event_store
from dinehub.main import create_app
from dinehub.store import MemoryStore

ORDER = {
    "userId": "u1",
    "restaurantId": "r1",
    "items": [{"name": "Paneer Tikka", "price": 410, "quantity": 2}],
    "type": "delivery",
    "total": 820,
    "customerName": "Asha",
    "customerPhone": "+91 98450 11223",
    "paymentMethod": "card",
    "paymentId": "pay_010",
}

BOOKING = {
    "userId": "u2",
    "restaurantId": "r1",
    "date": "2026-10-24",
    "time": "19:30",
    "customers": 2,
    "phone": "+91 99000 12345",
    "amount": 620,
    "paymentStatus": "paid",
}


@pytest.fixture
def client(tmp_path):
    store = MemoryStore(seed={"restaurants": [{"id": "r1", "name": "Spice Route", "isOpen": True}]})
    app = create_app(store=store, database_url=f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", init_timeout=1)
    with TestClient(app) as client:
        _wait_for(lambda: client.get("/health").json()["mirror"] == "ready")
        yield client


def _wait_for(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached")


def _mirrored_status(client, path, entity_id):
    for doc in client.get(path).json():
        if doc["id"] == entity_id:
            return doc["status"]
    return None


def _transition(client, kind, entity_id, status):
    response = client.post(f"/{kind}/{entity_id}/status", json={"status": status})
    if response.status_code == 200:
        _wait_for(lambda: _mirrored_status(client, f"/{kind}", entity_id) == status)
    return response


def _create(client, kind, body):
    response = client.post(f"/{kind}", json=body)
    assert response.status_code == 201, response.text
    doc = response.json()
    _wait_for(lambda: _mirrored_status(client, f"/{kind}", doc["id"]) is not None)
    return doc


class TestOrders:
    def test_create_returns_pending_order(self, client):
        order = _create(client, "orders", ORDER)
        assert order["status"] == "pending"
        assert order["total"] == 820
        assert order["createdAt"]
        assert order["paymentMethod"] == "card"

    def test_invalid_draft_is_rejected(self, client):
        response = client.post("/orders", json={**ORDER, "items": []})
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationFailed"

    def test_lifecycle_over_http(self, client):
        order = _create(client, "orders", ORDER)

        response = _transition(client, "orders", order["id"], "preparing")
        assert response.status_code == 409
        assert response.json()["current"] == "pending"

        assert _transition(client, "orders", order["id"], "confirmed").status_code == 200
        response = _transition(client, "orders", order["id"], "preparing")
        assert response.status_code == 200
        assert response.json()["previousStatus"] == "confirmed"

        history = client.get(f"/entities/{order['id']}/history").json()
        assert [h["status"] for h in history] == ["pending", "confirmed", "preparing"]

    def test_unknown_order_is_404(self, client):
        response = client.post("/orders/nope/status", json={"status": "confirmed"})
        assert response.status_code == 404
        assert response.json()["requested"] == "confirmed"

    def test_history_conflict_is_409(self, client, monkeypatch):
        order = _create(client, "orders", ORDER)

        async def always_stale(session, aggregate_id):
            return []

        monkeypatch.setattr(event_store, "load_events", always_stale)
        response = client.post(f"/orders/{order['id']}/status", json={"status": "confirmed"})

        assert response.status_code == 409
        assert response.json()["error"] == "ConcurrentAppend"
        assert response.json()["id"] == order["id"]

    def test_list_filters_by_restaurant(self, client):
        _create(client, "orders", ORDER)
        assert len(client.get("/orders", params={"restaurant_id": "r1"}).json()) == 1
        assert client.get("/orders", params={"restaurant_id": "r2"}).json() == []


class TestBookings:
    def test_booking_lifecycle(self, client):
        booking = _create(client, "bookings", BOOKING)
        assert _transition(client, "bookings", booking["id"], "completed").status_code == 409
        assert _transition(client, "bookings", booking["id"], "confirmed").status_code == 200
        assert _transition(client, "bookings", booking["id"], "completed").status_code == 200

    def test_missing_phone_is_rejected(self, client):
        response = client.post("/bookings", json={**BOOKING, "phone": ""})
        assert response.status_code == 422


class TestRevenue:
    def test_today_includes_new_order_and_booking(self, client):
        _create(client, "orders", ORDER)
        _create(client, "bookings", BOOKING)

        result = client.get("/revenue", params={"window": "today"}).json()
        assert result["ordersSubtotal"] == 820
        assert result["bookingsSubtotal"] == 620
        assert result["total"] == 1440
        assert result["orderCount"] == 1

    def test_unknown_window_is_rejected(self, client):
        assert client.get("/revenue", params={"window": "fortnight"}).status_code == 422
        assert client.get("/revenue/compare", params={"window": "yesterday"}).status_code == 422

    def test_compare_without_baseline(self, client):
        _create(client, "orders", ORDER)
        trend = client.get("/revenue/compare", params={"window": "today"}).json()
        assert trend["percentChange"] is None
        assert trend["hasBaseline"] is False

    def test_breakdowns_and_dashboard(self, client):
        _create(client, "orders", ORDER)

        rows = client.get("/revenue/restaurants", params={"window": "today"}).json()
        assert rows[0]["restaurantId"] == "r1"
        assert rows[0]["revenue"]["total"] == 820

        daily = client.get("/revenue/daily", params={"days": 7}).json()
        assert len(daily) == 7
        assert daily[0]["total"] == 820
        assert client.get("/revenue/daily", params={"days": 0}).status_code == 422

        dashboard = client.get("/dashboard").json()
        assert dashboard["summary"]["today"]["total"] == 820
        assert dashboard["status_counts"]["orders"]["pending"] == 1


class TestProgressSocket:
    def test_streams_progress_until_delivered(self, client):
        order = _create(client, "orders", ORDER)

        with client.websocket_connect(f"/ws/orders/{order['id']}/progress") as ws:
            assert ws.receive_json()["status"] == "pending"

            _transition(client, "orders", order["id"], "confirmed")
            assert ws.receive_json()["progressPercent"] == 10

            _transition(client, "orders", order["id"], "preparing")
            assert ws.receive_json()["status"] == "preparing"

            _transition(client, "orders", order["id"], "ready")
            _transition(client, "orders", order["id"], "delivered")
            seen = [ws.receive_json() for _ in range(5)]

        assert [s["status"] for s in seen] == [
            "ready_for_pickup",
            "assigned",
            "picked_up",
            "on_way",
            "delivered",
        ]
        assert all(s["estimatedArrival"] is None for s in seen)
        assert seen[-1]["countdown"] is None
        assert seen[-1]["progressPercent"] == 100


def test_health_reports_mirror_state(client):
    body = client.get("/health").json()
    assert body == {"status": "ok", "service": "dinehub", "mirror": "ready"}
