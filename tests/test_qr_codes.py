from conftest import auth, login, create_theater


def _create(client, tid, token, name, seats=("A1",)):
    return client.post(f"/api/qr-names/{tid}", headers=auth(token), json={"name": name, "seats": list(seats)})


def test_qr_names_are_unique_per_theater_only(client, super_token, theater):
    other = create_theater(client, super_token, name="Other Screens", admin_username="other-admin")
    other_token = login(client, "other-admin", "secret1")

    assert _create(client, theater["id"], theater["adminToken"], "Screen-1").status_code == 201
    assert _create(client, other["id"], other_token, "Screen-1").status_code == 201

    rv = _create(client, theater["id"], theater["adminToken"], "Screen-1")
    assert rv.status_code == 409
    assert rv.get_json()["code"] == "CONFLICT"
    assert _create(client, other["id"], other_token, "Screen-2").status_code == 201


def test_seat_codes_carry_deep_link_and_inline_image(client, theater):
    rv = _create(client, theater["id"], theater["adminToken"], "Screen-1", seats=["A1", "A2"])
    entry = rv.get_json()["data"]
    assert [s["label"] for s in entry["seats"]] == ["A1", "A2"]
    seat = entry["seats"][0]
    assert seat["qrPayload"].endswith(f"/menu/{theater['id']}?qrName=Screen-1&seat=A1")
    assert seat["imageDataUrl"].startswith("data:image/png;base64,")


def test_add_and_remove_seats(client, theater):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    entry = _create(client, tid, theater["adminToken"], "Screen-1").get_json()["data"]

    rv = client.post(f"/api/qr-names/{tid}/{entry['id']}/seats", headers=headers, json={"seats": ["B1", "B2"]})
    assert rv.status_code == 201
    assert [s["label"] for s in rv.get_json()["data"]["seats"]] == ["A1", "B1", "B2"]

    rv = client.delete(f"/api/qr-names/{tid}/{entry['id']}/seats/A1", headers=headers)
    assert [s["label"] for s in rv.get_json()["data"]["seats"]] == ["B1", "B2"]


def test_resolve_is_public_and_checks_the_seat(client, theater, seat):
    tid = theater["id"]
    rv = client.get(f"/api/qr-names/{tid}/resolve?qrName=screen-1&seat=A1")
    assert rv.status_code == 200
    assert rv.get_json()["data"] == {"theaterId": tid, "qrName": "Screen-1", "seat": "A1"}

    rv = client.get(f"/api/qr-names/{tid}/resolve?qrName=Screen-1&seat=Z9")
    assert rv.status_code == 400
    assert "seat" in rv.get_json()["fields"]


def test_delete_qr_name(client, theater):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    entry = _create(client, tid, theater["adminToken"], "Screen-1").get_json()["data"]
    assert client.delete(f"/api/qr-names/{tid}/{entry['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/qr-names/{tid}", headers=headers).get_json()["data"] == []
