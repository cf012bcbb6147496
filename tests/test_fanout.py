import pytest

import fanout
import orders
from conftest import auth
from database import DeviceRegistration


@pytest.fixture
def pushes(monkeypatch):
    sent = []

    def fake_send(self, tokens, data):
        sent.append((self.server_key, list(tokens), data))
        return [t for t in tokens if t.startswith("dead")]

    monkeypatch.setattr(fanout.FcmPushSender, "send", fake_send)
    return sent


def _register(client, token, theater, device_token):
    return client.post("/api/pos/register-device", headers=auth(token),
                       json={"theaterId": theater["id"], "token": device_token, "platform": "android"})


def test_register_is_idempotent(app, client, theater, staff_token):
    assert _register(client, staff_token, theater, "tok-1").status_code == 201
    assert _register(client, staff_token, theater, "tok-1").status_code == 201
    with app.app_context():
        assert fanout.device_tokens(theater["id"]) == ["tok-1"]

    rv = client.post("/api/pos/unregister-device", headers=auth(staff_token),
                     json={"theaterId": theater["id"], "token": "tok-1"})
    assert rv.get_json()["data"] == {"removed": 1}


def test_paid_online_order_is_pushed_and_dead_tokens_pruned(app, client, theater, staff_token, product, seat, pushes):
    tid = theater["id"]
    client.put(f"/api/theaters/{tid}/settings", headers=auth(theater["adminToken"]), json={"pushServerKey": "srv-key"})
    _register(client, staff_token, theater, "tok-live")
    _register(client, staff_token, theater, "dead-tok")

    order = client.post("/api/orders/theater", json={
        "theaterId": tid, "items": [{"productId": product["id"], "quantity": 1}], **seat,
    }).get_json()["data"]
    assert pushes == []

    with app.app_context():
        orders.mark_paid(orders.get_order(tid, order["id"]), provider="razorpay")
        remaining = [d.token for d in DeviceRegistration.query.filter_by(tenant_id=tid).all()]

    assert len(pushes) == 1
    key, tokens, data = pushes[0]
    assert key == "srv-key"
    assert tokens == ["tok-live", "dead-tok"]
    assert data == {
        "type": "pos_order", "orderId": str(order["id"]), "orderNumber": order["orderNumber"],
        "theaterId": str(tid), "source": "qr_order",
    }
    assert remaining == ["tok-live"]


def test_counter_orders_are_not_pushed(client, theater, staff_token, product, pushes):
    client.put(f"/api/theaters/{theater['id']}/settings", headers=auth(theater["adminToken"]),
               json={"pushServerKey": "srv-key"})
    _register(client, staff_token, theater, "tok-live")
    rv = client.post("/api/orders/theater", headers=auth(staff_token), json={
        "theaterId": theater["id"], "items": [{"productId": product["id"], "quantity": 1}],
    })
    assert rv.get_json()["data"]["payment"]["status"] == "paid"
    assert pushes == []
