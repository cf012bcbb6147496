import json

import pytest

import payments
from conftest import auth
from errors import ConflictError
from events import bus, ORDER_PAID

KEY_SECRET = "rzp-secret"
WEBHOOK_SECRET = "rzp-webhook-secret"


@pytest.fixture
def gateway(client, super_token, theater, monkeypatch):
    rv = client.put(f"/api/theaters/{theater['id']}/payment-gateway/online", headers=auth(super_token), json={
        "provider": "razorpay",
        "razorpay": {"enabled": True, "keyId": "rzp_test_key", "keySecret": KEY_SECRET,
                     "webhookSecret": WEBHOOK_SECRET, "testMode": True},
    })
    assert rv.status_code == 200, rv.get_json()

    created = []

    def fake_create_order(self, amount_paise, currency, receipt, notes=None):
        created.append(amount_paise)
        return {"id": f"order_rzp_{len(created)}", "currency": currency, "amount": amount_paise}

    monkeypatch.setattr(payments.RazorpayGateway, "create_order", fake_create_order)
    return created


@pytest.fixture
def paid_events():
    seen = []
    unsubscribe = bus.subscribe(ORDER_PAID, seen.append)
    yield seen
    unsubscribe()


def _pending_order(client, theater, product, seat):
    rv = client.post("/api/orders/theater", json={
        "theaterId": theater["id"], "items": [{"productId": product["id"], "quantity": 2}], **seat,
    })
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["data"]


def _checkout(client, theater, order):
    rv = client.post("/api/payments/create-order", json={"theaterId": theater["id"], "orderId": order["id"]})
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["data"]


def test_public_config_never_exposes_secrets(client, super_token, theater, gateway):
    rv = client.get(f"/api/payments/config/{theater['id']}/online")
    cfg = rv.get_json()["data"]
    assert cfg["provider"] == "razorpay"
    assert cfg["isEnabled"] is True
    assert cfg["razorpay"] == {"keyId": "rzp_test_key", "testMode": True}
    assert KEY_SECRET not in json.dumps(cfg)

    rv = client.get(f"/api/theaters/{theater['id']}/payment-gateway/online", headers=auth(super_token))
    assert rv.get_json()["data"]["razorpay"]["keySecret"] == payments.MASK


def test_unconfigured_channel_is_not_ready(client, theater, product, seat):
    order = _pending_order(client, theater, product, seat)
    rv = client.post("/api/payments/create-order", json={"theaterId": theater["id"], "orderId": order["id"]})
    assert rv.status_code == 402
    assert rv.get_json()["code"] == "GATEWAY_NOT_READY"


def test_checkout_amount_is_in_paise(client, theater, product, seat, gateway):
    order = _pending_order(client, theater, product, seat)
    checkout = _checkout(client, theater, order)
    assert checkout["amount"] == 18900
    assert checkout["keyId"] == "rzp_test_key"
    assert gateway == [18900]

    again = _checkout(client, theater, order)
    assert again["providerOrderId"] == checkout["providerOrderId"]
    assert gateway == [18900]


def test_verify_is_idempotent(client, theater, product, seat, gateway, paid_events):
    order = _pending_order(client, theater, product, seat)
    checkout = _checkout(client, theater, order)
    body = {
        "theaterId": theater["id"],
        "orderId": order["id"],
        "razorpay_order_id": checkout["providerOrderId"],
        "razorpay_payment_id": "pay_001",
        "razorpay_signature": payments.razorpay_signature(checkout["providerOrderId"], "pay_001", KEY_SECRET),
    }

    rv = client.post("/api/payments/verify", json=body)
    assert rv.status_code == 200, rv.get_json()
    first = rv.get_json()["data"]
    assert first["verified"] is True
    assert first["alreadyPaid"] is False
    assert first["order"]["payment"]["status"] == "paid"

    rv = client.post("/api/payments/verify", json=body)
    assert rv.status_code == 200
    second = rv.get_json()["data"]
    assert second["alreadyPaid"] is True
    assert second["order"]["payment"]["status"] == "paid"

    assert [e["orderId"] for e in paid_events] == [order["id"]]


def test_bad_signature_fails_the_order(client, theater, product, seat, gateway, paid_events):
    order = _pending_order(client, theater, product, seat)
    checkout = _checkout(client, theater, order)
    rv = client.post("/api/payments/verify", json={
        "theaterId": theater["id"],
        "orderId": order["id"],
        "razorpay_order_id": checkout["providerOrderId"],
        "razorpay_payment_id": "pay_002",
        "razorpay_signature": "forged",
    })
    assert rv.status_code == 402
    body = rv.get_json()
    assert body["code"] == "PAYMENT_FAILED"
    assert body["retry"] is True
    assert paid_events == []

    rv = client.get(f"/api/orders/theater/{theater['id']}/{order['id']}", headers=auth(theater["adminToken"]))
    assert rv.get_json()["data"]["payment"]["status"] == "failed"


def test_webhook_capture_marks_paid(client, theater, product, seat, gateway, paid_events):
    order = _pending_order(client, theater, product, seat)
    checkout = _checkout(client, theater, order)
    raw = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_web_1", "order_id": checkout["providerOrderId"]}}},
    }).encode("utf-8")

    rv = client.post(f"/api/payments/webhook/razorpay/{theater['id']}", data=raw,
                     headers={"X-Razorpay-Signature": "nope", "Content-Type": "application/json"})
    assert rv.status_code == 400

    rv = client.post(f"/api/payments/webhook/razorpay/{theater['id']}", data=raw, headers={
        "X-Razorpay-Signature": payments.webhook_signature(raw, WEBHOOK_SECRET),
        "Content-Type": "application/json",
    })
    assert rv.status_code == 200
    assert rv.get_json()["data"] == {"event": "payment.captured", "handled": True}
    assert len(paid_events) == 1


def test_sweep_cancels_stale_pending_orders(app, client, theater, product, seat):
    from datetime import timedelta
    from database import now_utc

    order = _pending_order(client, theater, product, seat)
    with app.app_context():
        assert payments.sweep_pending(30, now=now_utc() + timedelta(minutes=31)) == 1
    rv = client.get(f"/api/orders/theater/{theater['id']}/{order['id']}", headers=auth(theater["adminToken"]))
    assert rv.get_json()["data"]["payment"]["status"] == "cancelled"


def _status(client, theater, order):
    rv = client.get(f"/api/orders/theater/{theater['id']}/{order['id']}", headers=auth(theater["adminToken"]))
    return rv.get_json()["data"]["payment"]["status"]


def test_verify_without_gateway_ids_is_rejected_and_order_stays_pending(client, theater, product, seat, gateway):
    order = _pending_order(client, theater, product, seat)
    _checkout(client, theater, order)
    rv = client.post("/api/payments/verify", json={"theaterId": theater["id"], "orderId": order["id"]})
    assert rv.status_code == 400
    body = rv.get_json()
    assert body["code"] == "VALIDATION_ERROR"
    assert set(body["fields"]) == {"providerOrderId", "paymentId", "signature"}
    assert _status(client, theater, order) == "pending"


def test_verify_naming_another_orders_transaction_changes_nothing(client, theater, product, seat, gateway):
    mine = _pending_order(client, theater, product, seat)
    other = _pending_order(client, theater, product, seat)
    _checkout(client, theater, mine)
    foreign = _checkout(client, theater, other)["providerOrderId"]

    rv = client.post("/api/payments/verify", json={
        "theaterId": theater["id"],
        "orderId": mine["id"],
        "razorpay_order_id": foreign,
        "razorpay_payment_id": "pay_003",
        "razorpay_signature": payments.razorpay_signature(foreign, "pay_003", KEY_SECRET),
    })
    assert rv.status_code == 409
    assert rv.get_json()["code"] == "TRANSACTION_MISMATCH"
    assert _status(client, theater, mine) == "pending"
    assert _status(client, theater, other) == "pending"


def test_losing_a_concurrent_settlement_emits_nothing(app, client, theater, product, seat, paid_events):
    import orders
    from database import db, Order

    order = _pending_order(client, theater, product, seat)
    with app.app_context():
        stale = orders.get_order(theater["id"], order["id"])
        assert stale.payment_status == "pending"
        # another worker settles the row behind this session's back
        table = Order.__table__
        db.session.execute(table.update().where(table.c.id == order["id"]).values(payment_status="paid"))

        assert orders.mark_paid(stale, provider="razorpay") is False
        assert stale.payment_status == "paid"
        with pytest.raises(ConflictError):
            orders.mark_failed(stale, reason="late failure")
    assert paid_events == []


def test_configured_provider_without_checkout_client_is_not_enabled(client, super_token, theater):
    rv = client.put(f"/api/theaters/{theater['id']}/payment-gateway/online", headers=auth(super_token), json={
        "provider": "phonepe",
        "phonepe": {"enabled": True, "merchantId": "PGTESTMID", "saltKey": "salt-1"},
    })
    assert rv.status_code == 200, rv.get_json()
    cfg = client.get(f"/api/payments/config/{theater['id']}/online").get_json()["data"]
    assert cfg["provider"] == "phonepe"
    assert cfg["isEnabled"] is False
    assert "phonepe" not in cfg
