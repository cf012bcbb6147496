import os

os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_BACKEND"] = "null"
os.environ["SECRET_KEY"] = "test-secret-key-for-the-canteen-suite"

import pytest

from app import app as flask_app, sms_sender
from database import db, User, SUPER_ADMIN_ROLE


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()
    sms_sender.outbox.clear()


@pytest.fixture
def client(app):
    return app.test_client()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def login(client, username, password):
    rv = client.post("/api/auth/login", json={"username": username, "password": password})
    assert rv.status_code == 200, rv.get_json()
    return rv.get_json()["data"]["token"]


@pytest.fixture
def super_token(app, client):
    with app.app_context():
        u = User(username="root", name="Super Admin", role=SUPER_ADMIN_ROLE)
        u.set_password("rootpass")
        db.session.add(u)
        db.session.commit()
    return login(client, "root", "rootpass")


def create_theater(client, super_token, name="Galaxy Cinemas", admin_username="galaxy-admin"):
    rv = client.post("/api/theaters", headers=auth(super_token), json={
        "name": name,
        "gstNumber": "29ABCDE1234F1Z5",
        "contact": {"phone": "9876543210"},
        "admin": {"username": admin_username, "password": "secret1", "name": "Theater Admin"},
    })
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["data"]


@pytest.fixture
def theater(client, super_token):
    t = create_theater(client, super_token)
    t["adminToken"] = login(client, "galaxy-admin", "secret1")
    return t


@pytest.fixture
def staff_token(client, theater):
    rv = client.post(f"/api/theaters/{theater['id']}/users", headers=auth(theater["adminToken"]), json={
        "username": "counter1", "password": "secret1", "role": "tenant_staff",
    })
    assert rv.status_code == 201, rv.get_json()
    return login(client, "counter1", "secret1")


@pytest.fixture
def product(client, theater):
    """An untracked product: basePrice 100, 5% GST on top, 10% off."""
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    cat = client.post(f"/api/theater-categories/{tid}", headers=headers, json={"name": "Snacks"})
    assert cat.status_code == 201, cat.get_json()
    rv = client.post(f"/api/theater-products/{tid}", headers=headers, json={
        "name": "Popcorn",
        "categoryId": cat.get_json()["data"]["id"],
        "pricing": {"basePrice": 100, "taxRate": 5, "gstType": "EXCLUDE", "discountPercentage": 10},
        "trackStock": False,
    })
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["data"]


@pytest.fixture
def seat(client, theater):
    rv = client.post(f"/api/qr-names/{theater['id']}", headers=auth(theater["adminToken"]), json={
        "name": "Screen-1", "screen": "Audi 1", "seats": ["A1", "A2"],
    })
    assert rv.status_code == 201, rv.get_json()
    return {"qrName": "Screen-1", "seat": "A1"}
