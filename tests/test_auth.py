from app import sms_sender
from otp import LoggingSmsSender
from conftest import auth

PHONE = "9876543210"


def _customer_token(client, tid, phone=PHONE):
    rv = client.post("/api/sms/send-otp", json={"theaterId": tid, "phone": phone})
    assert rv.status_code == 200, rv.get_json()
    assert rv.get_json()["data"]["phone"].endswith(phone[-4:])
    sent_to, message = sms_sender.outbox[-1]
    assert sent_to == phone
    code = message.split()[0]

    rv = client.post("/api/sms/verify-otp", json={"theaterId": tid, "phone": phone, "otp": code})
    assert rv.status_code == 200, rv.get_json()
    return rv.get_json()["data"]["token"]


def test_health(client):
    rv = client.get("/api/health")
    assert rv.status_code == 200
    assert rv.get_json()["success"] is True
    assert client.head("/api/health").status_code == 200


def test_login_rejects_bad_password(client, super_token):
    rv = client.post("/api/auth/login", json={"username": "root", "password": "wrong"})
    assert rv.status_code == 401
    assert rv.get_json()["code"] == "INVALID_CREDENTIALS"


def test_login_redirects_to_first_menu_page(client, theater):
    rv = client.post("/api/auth/login", json={"username": "galaxy-admin", "password": "secret1"})
    assert rv.get_json()["data"]["redirect"] == f"/theater-dashboard/{theater['id']}"


def test_me_returns_user_and_menu(client, theater):
    rv = client.get("/api/auth/me", headers=auth(theater["adminToken"]))
    data = rv.get_json()["data"]
    assert data["user"]["username"] == "galaxy-admin"
    assert data["menu"][0]["page"] == "dashboard"


def test_garbage_token_is_unauthenticated(client, theater):
    rv = client.get("/api/auth/me", headers=auth("not-a-token"))
    assert rv.status_code == 401


def test_inactive_user_cannot_log_in(client, theater, staff_token):
    tid = theater["id"]
    users = client.get(f"/api/theaters/{tid}/users", headers=auth(theater["adminToken"])).get_json()["data"]
    staff = next(u for u in users if u["username"] == "counter1")
    rv = client.put(f"/api/users/{staff['id']}", headers=auth(theater["adminToken"]), json={"status": "inactive"})
    assert rv.status_code == 200

    rv = client.post("/api/auth/login", json={"username": "counter1", "password": "secret1"})
    assert rv.status_code == 401
    assert rv.get_json()["code"] == "ACCOUNT_INACTIVE"
    assert client.get("/api/auth/me", headers=auth(staff_token)).status_code == 401


def test_wrong_otp_is_rejected(client, theater):
    client.post("/api/sms/send-otp", json={"theaterId": theater["id"], "phone": PHONE})
    rv = client.post("/api/sms/verify-otp", json={"theaterId": theater["id"], "phone": PHONE, "otp": "abcdef"})
    assert rv.status_code == 401
    assert rv.get_json()["code"] == "OTP_INVALID"


def test_invalid_phone_is_rejected(client, theater):
    rv = client.post("/api/sms/send-otp", json={"theaterId": theater["id"], "phone": "12"})
    assert rv.status_code == 400
    assert rv.get_json()["fields"] == {"phone": "invalid"}


def test_customer_reads_only_own_orders(client, theater, product, seat):
    tid = theater["id"]
    token = _customer_token(client, tid)
    rv = client.post("/api/orders/theater", headers=auth(token), json={
        "theaterId": tid, "items": [{"productId": product["id"], "quantity": 1}], **seat,
    })
    assert rv.status_code == 201, rv.get_json()
    order = rv.get_json()["data"]
    assert order["customer"]["phone"] == PHONE

    rv = client.get(f"/api/orders/theater/{tid}/{order['id']}", headers=auth(token))
    assert rv.status_code == 200

    other = _customer_token(client, tid, phone="9123456780")
    rv = client.get(f"/api/orders/theater/{tid}/{order['id']}", headers=auth(other))
    assert rv.status_code == 403

    assert client.get(f"/api/orders/theater/{tid}", headers=auth(token)).status_code == 403


def test_login_with_non_string_username_is_a_validation_error(client):
    rv = client.post("/api/auth/login", json={"username": 42, "password": "secret1"})
    assert rv.status_code == 400
    assert rv.get_json()["code"] == "VALIDATION_ERROR"


def test_sms_outbox_keeps_only_recent_messages():
    sender = LoggingSmsSender(maxlen=3)
    for i in range(5):
        sender.send("9876543210", f"{i} is your code")
    assert len(sender.outbox) == 3
    assert sender.outbox[0][1] == "2 is your code"
