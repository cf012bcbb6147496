from conftest import auth, login, create_theater


def _roles(client, theater):
    rv = client.get(f"/api/roles?theaterId={theater['id']}", headers=auth(theater["adminToken"]))
    assert rv.status_code == 200
    return rv.get_json()["data"]


def test_new_theater_gets_default_pages_and_roles(client, theater):
    rv = client.get(f"/api/page-access?theaterId={theater['id']}", headers=auth(theater["adminToken"]))
    pages = [p["page"] for p in rv.get_json()["data"]]
    assert pages[0] == "dashboard"
    assert {"orders", "pos", "qr", "users"} <= set(pages)
    assert {r["name"] for r in _roles(client, theater)} == {"tenant_admin", "tenant_staff"}


def test_removing_a_page_strips_it_from_every_role(client, theater):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    assert any(p["page"] == "orders" for r in _roles(client, theater) for p in r["permissions"])

    rv = client.delete(f"/api/page-access/orders?theaterId={tid}", headers=headers)
    assert rv.status_code == 200, rv.get_json()
    assert rv.get_json()["data"]["page"] == "orders"

    for role in _roles(client, theater):
        assert all(p["page"] != "orders" for p in role["permissions"])
    rv = client.get(f"/api/page-access?theaterId={tid}", headers=headers)
    assert "orders" not in [p["page"] for p in rv.get_json()["data"]]


def test_page_upsert_by_key_updates_role_routes(client, theater):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    rv = client.post("/api/page-access", headers=headers, json={
        "theaterId": tid, "page": "qr", "pageName": "Seat QR", "route": "/seat-qr/:tenantId", "category": "qr",
    })
    assert rv.status_code == 201, rv.get_json()
    qr_perms = [p for r in _roles(client, theater) for p in r["permissions"] if p["page"] == "qr"]
    assert qr_perms and all(p["route"] == "/seat-qr/:tenantId" for p in qr_perms)


def test_invalid_page_category_rejected(client, theater):
    rv = client.post("/api/page-access", headers=auth(theater["adminToken"]), json={
        "theaterId": theater["id"], "page": "x", "pageName": "X", "route": "/x", "category": "nonsense",
    })
    assert rv.status_code == 400
    assert "category" in rv.get_json()["fields"]


def test_staff_menu_and_redirect(client, theater, staff_token):
    tid = theater["id"]
    rv = client.get("/api/access/menu", headers=auth(staff_token))
    routes = [m["route"] for m in rv.get_json()["data"]]
    assert routes[0] == f"/theater-dashboard/{tid}"
    assert f"/theater-users/{tid}" not in routes

    rv = client.post("/api/access/check", headers=auth(staff_token), json={"route": f"/theater-users/{tid}"})
    result = rv.get_json()["data"]
    assert result == {"allow": False, "redirect": f"/theater-dashboard/{tid}", "accessDenied": False}

    rv = client.post("/api/access/check", headers=auth(staff_token), json={"route": f"/pos/{tid}"})
    assert rv.get_json()["data"]["allow"] is True


def test_staff_cannot_manage_users(client, theater, staff_token):
    rv = client.get(f"/api/theaters/{theater['id']}/users", headers=auth(staff_token))
    assert rv.status_code == 403
    body = rv.get_json()
    assert body["success"] is False
    assert body["code"] == "FORBIDDEN"


def test_custom_role_grants_only_listed_pages(client, theater):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    rv = client.post("/api/roles", headers=headers, json={
        "theaterId": tid, "name": "Cashier",
        "permissions": [{"page": "qr", "hasAccess": True}, {"page": "orders", "hasAccess": False}],
    })
    assert rv.status_code == 201, rv.get_json()
    client.post(f"/api/theaters/{tid}/users", headers=headers, json={
        "username": "cashier1", "password": "secret1", "role": "Cashier",
    })
    token = login(client, "cashier1", "secret1")

    assert client.get(f"/api/qr-names/{tid}", headers=auth(token)).status_code == 200
    assert client.get(f"/api/orders/theater/{tid}", headers=auth(token)).status_code == 403


def test_default_roles_cannot_be_deleted(client, theater):
    staff_role = next(r for r in _roles(client, theater) if r["name"] == "tenant_staff")
    rv = client.delete(f"/api/roles/{staff_role['id']}?theaterId={theater['id']}", headers=auth(theater["adminToken"]))
    assert rv.status_code == 409


def test_admin_is_confined_to_own_theater(client, super_token, theater):
    other = create_theater(client, super_token, name="Other Screens", admin_username="other-admin")
    rv = client.get(f"/api/orders/theater/{other['id']}", headers=auth(theater["adminToken"]))
    assert rv.status_code == 403
    rv = client.get(f"/api/orders/theater/{other['id']}", headers=auth(super_token))
    assert rv.status_code == 200


def test_unauthenticated_requests_get_401(client, theater):
    rv = client.get(f"/api/orders/theater/{theater['id']}")
    assert rv.status_code == 401
    assert rv.get_json()["code"] == "AUTH_REQUIRED"
