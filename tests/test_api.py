import uuid

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.tables import get_table_blocks

ITEMS = [
    {"item_id": "m1", "name": "Chicken Kottu", "unit_price": 100.0, "quantity": 2},
    {"item_id": "d1", "name": "Lime Juice", "unit_price": 50.0, "quantity": 1},
]


@pytest.fixture()
def client():
    get_table_blocks().clear()
    with TestClient(app) as test_client:
        yield test_client


def _unique(prefix):
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _dining(client, table_number=7, **extra):
    response = client.post("/api/orders", json={
        "order_type": "dining", "table_number": table_number, "items": ITEMS, **extra,
    })
    assert response.status_code == 200, response.text
    return response.json()


# =============================================================================
# ROOT / HEALTH
# =============================================================================

def test_root(client):
    body = client.get("/").json()
    assert body["health"] == "/health"


def test_health_reports_each_component(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["database"] == "healthy"
    assert body["event_bus"] == "healthy"
    assert body["status"] in ("operational", "degraded")


# =============================================================================
# ORDERS
# =============================================================================

def test_order_lifecycle_over_http(client):
    order = _dining(client, table_number=11)
    assert order["total"] == 250
    assert (order["status"], order["is_paid"], order["is_settled"]) == ("new", False, False)

    by_code = client.get(f"/api/orders/{order['order_code']}")
    assert by_code.json()["id"] == order["id"]

    cooking = client.patch(f"/api/orders/{order['id']}/status", json={"status": "cooking"})
    assert cooking.json()["status"] == "cooking"

    active_ids = [o["id"] for o in client.get("/api/orders/active").json()["orders"]]
    assert order["id"] in active_ids

    paid = client.post(f"/api/orders/{order['id']}/pay", json={"payment_method": "cash"})
    assert paid.status_code == 200
    assert paid.json()["is_settled"] is True

    active_ids = [o["id"] for o in client.get("/api/orders/active").json()["orders"]]
    assert order["id"] not in active_ids


def test_second_payment_is_a_conflict(client):
    order = _dining(client)
    client.post(f"/api/orders/{order['id']}/pay", json={"payment_method": "card"})

    response = client.post(f"/api/orders/{order['id']}/pay", json={"payment_method": "cash"})

    assert response.status_code == 409
    assert response.json()["error_code"] == "conflict"
    assert client.get(f"/api/orders/{order['id']}").json()["payment_method"] == "card"


def test_takeaway_without_payment_method_is_a_400(client):
    response = client.post("/api/orders", json={"order_type": "takeaway", "items": ITEMS})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "validation_error"


def test_malformed_body_is_a_400(client):
    response = client.post("/api/orders", json={
        "order_type": "dining", "table_number": 2,
        "items": [{"item_id": "m1", "name": "Kottu", "unit_price": 100, "quantity": 0}],
    })

    assert response.status_code == 400
    assert response.json()["error_code"] == "validation_error"


def test_unknown_order_is_a_404(client):
    response = client.get("/api/orders/ORD-does-not-exist")
    assert response.status_code == 404
    assert response.json()["error_code"] == "not_found"


def test_refund_flow(client):
    response = client.post("/api/orders", json={
        "order_type": "takeaway", "payment_method": "cash", "items": ITEMS,
    })
    order = response.json()
    assert order["is_paid"] is True

    client.patch(f"/api/orders/{order['id']}/status", json={"status": "cancelled"})
    refunded = client.post(f"/api/orders/{order['id']}/refund")

    assert refunded.status_code == 200
    assert refunded.json()["refund_status"] is True
    assert client.post(f"/api/orders/{order['id']}/refund").status_code == 409


def test_update_and_delete_order(client):
    order = _dining(client)

    updated = client.put(f"/api/orders/{order['id']}", json={"customer_name": "Saman"})
    assert updated.json()["customer_name"] == "Saman"

    assert client.delete(f"/api/orders/{order['id']}").status_code == 200
    assert client.get(f"/api/orders/{order['id']}").status_code == 404


def test_order_history_endpoint(client):
    order = _dining(client, table_number=14)
    client.post(f"/api/orders/{order['id']}/pay", json={"payment_method": "cash"})

    history = client.get("/api/orders/history", params={"limit": 5}).json()["orders"]

    assert history[0]["id"] == order["id"]
    assert history[0]["is_settled"] is True


def test_list_orders_filters(client):
    table_number = 400 + uuid.uuid4().int % 500
    order = _dining(client, table_number=table_number)

    body = client.get("/api/orders", params={"table_number": table_number}).json()

    assert [o["id"] for o in body["orders"]] == [order["id"]]
    assert client.get("/api/orders", params={"status": "served"}).status_code == 400


# =============================================================================
# TABLES
# =============================================================================

def test_table_administration(client):
    label = _unique("T")
    created = client.post("/api/tables", json={"label": label, "capacity": 4})
    assert created.status_code == 200
    table_number = created.json()["table_number"]

    duplicate = client.post("/api/tables", json={"label": label, "capacity": 2})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "Table label already exists"

    assert client.post("/api/tables", json={"label": _unique("T"), "capacity": 0}).status_code == 400

    off = client.patch(f"/api/tables/{table_number}/availability", json={"available": False})
    assert off.json()["available"] is False

    labels = [t["label"] for t in client.get("/api/tables").json()]
    assert label in labels

    assert client.delete(f"/api/tables/{table_number}").status_code == 200
    assert client.get(f"/api/tables/{table_number}").status_code == 404


def test_block_and_release_over_http(client):
    blocked = client.post("/api/tables/8/block", json={"table_label": "A8"})
    assert blocked.json()["table_id"] == 8
    assert [b["table_id"] for b in client.get("/api/tables/blocked").json()] == [8]

    released = client.post("/api/tables/8/release", headers={"x-actor": "amaya"})
    assert released.json()["message"] == "Table 8 released"
    assert client.get("/api/tables/blocked").json() == []

    assert client.post("/api/tables/0/block", json={}).status_code == 400


# =============================================================================
# SHIFTS / CASHIERS
# =============================================================================

def test_shift_flow_over_http(client):
    cashier = {"cashier_id": _unique("c"), "cashier_username": "amaya"}

    opened = client.post("/api/shifts/cash-in", json={**cashier, "amount": 1000})
    assert opened.status_code == 200

    again = client.post("/api/shifts/cash-in", json={**cashier, "amount": 1000})
    assert again.status_code == 409

    active = client.get("/api/shifts/active", params={"cashier_id": cashier["cashier_id"]}).json()
    assert active["active_shift"]["id"] == opened.json()["id"]

    balance = client.get("/api/shifts/balance", params={"cashier_id": cashier["cashier_id"]})
    assert balance.status_code == 200
    assert balance.json()["cash_in_amount"] == 1000

    closed = client.post("/api/shifts/cash-out", json={**cashier, "amount": 1400})
    assert closed.json()["difference"] == 400

    missing = client.post("/api/shifts/cash-out", json={**cashier, "amount": 1400})
    assert missing.status_code == 404

    history = client.get("/api/shifts", params={"cashier_id": cashier["cashier_id"]}).json()
    assert [s["status"] for s in history] == ["completed"]


def test_negative_cash_in_is_a_400(client):
    response = client.post("/api/shifts/cash-in", json={
        "cashier_id": _unique("c"), "cashier_username": "amaya", "amount": -5,
    })
    assert response.status_code == 400


def test_cashier_login(client):
    username = _unique("cashier")
    assert client.post("/api/cashiers", json={"username": username, "password": "pw"}).status_code == 200

    login = client.post("/api/cashiers/login", json={"username": username, "password": "pw"})
    assert login.status_code == 200
    assert login.json()["active_shift"] is None

    bad = client.post("/api/cashiers/login", json={"username": username, "password": "nope"})
    assert bad.status_code == 400


# =============================================================================
# LIVE EVENTS
# =============================================================================

def test_websocket_delivers_only_subscribed_topics(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "subscribe:orders"})
        assert ws.receive_json() == {"event": "subscribed", "data": {"topic": "orders"}}

        client.post("/api/tables/12/block", json={"table_label": "A12"})
        order = _dining(client, table_number=13)

        message = ws.receive_json()
        assert message["event"] == "order_update"
        assert message["data"]["type"] == "order_created"
        assert message["data"]["order"]["id"] == order["id"]


def test_websocket_customer_signals(client):
    with client.websocket_connect("/ws") as cashier, client.websocket_connect("/ws") as customer:
        cashier.send_json({"event": "subscribe:tables"})
        assert cashier.receive_json()["event"] == "subscribed"

        customer.send_json({"event": "table_blocked", "data": {"table_id": 5, "table_label": "A5"}})
        blocked = cashier.receive_json()
        assert blocked["event"] == "table_blocked"
        assert blocked["data"]["table_id"] == 5

        customer.send_json({"event": "bell_request", "data": {"table_id": 5, "table_label": "A5"}})
        assert cashier.receive_json()["event"] == "bell_request"

        customer.send_json({"event": "table_released", "data": {"table_id": 5}})
        assert cashier.receive_json()["event"] == "table_released"


def test_websocket_rejects_bad_messages(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "subscribe:kitchen"})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Unknown topic: kitchen"}}

        ws.send_json({"event": "table_blocked", "data": {"table_id": "x"}})
        assert ws.receive_json()["event"] == "error"
