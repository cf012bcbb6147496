from conftest import auth


def test_public_listing_hides_inactive_products(client, theater, product):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    client.post(f"/api/theater-products/{tid}", headers=headers, json={
        "name": "Old Nachos", "pricing": {"basePrice": 80}, "isActive": False,
    })

    public = client.get(f"/api/theater-products/{tid}").get_json()["data"]
    assert [p["name"] for p in public["items"]] == ["Popcorn"]

    staff = client.get(f"/api/theater-products/{tid}", headers=headers).get_json()["data"]
    assert {p["name"] for p in staff["items"]} == {"Popcorn", "Old Nachos"}
    assert staff["pagination"]["total"] == 2
    assert staff["stockSource"] == "cafe"


def test_product_dict_joins_category_and_effective_price(client, theater, product):
    assert product["category"]["name"] == "Snacks"
    assert product["pricing"]["basePrice"] == 100.0
    assert product["effectivePrice"] == 90.0


def test_listing_reports_balance_from_requested_ledger(client, theater, product):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    client.post(f"/api/theater-stock/{tid}/{product['id']}", headers=headers, json={"invordStock": 40})

    theater_view = client.get(f"/api/theater-products/{tid}?stockSource=theater", headers=headers).get_json()["data"]
    cafe_view = client.get(f"/api/theater-products/{tid}?stockSource=cafe", headers=headers).get_json()["data"]
    assert theater_view["items"][0]["balanceStock"] == 40.0
    assert cafe_view["items"][0]["balanceStock"] == 0.0

    rv = client.get(f"/api/theater-products/{tid}?stockSource=warehouse", headers=headers)
    assert rv.status_code == 400


def test_customer_menu_always_reads_the_cafe_ledger(client, theater, product):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    client.post(f"/api/theater-stock/{tid}/{product['id']}", headers=headers, json={"invordStock": 40})
    client.post(f"/api/cafe-stock/{tid}/{product['id']}", headers=headers, json={"invordStock": 3})

    for url in (f"/api/theater-products/{tid}", f"/api/theater-products/{tid}?stockSource=theater"):
        menu = client.get(url).get_json()["data"]
        assert menu["stockSource"] == "cafe"
        assert menu["items"][0]["balanceStock"] == 3.0

    single = client.get(f"/api/theater-products/{tid}/{product['id']}?stockSource=theater").get_json()["data"]
    assert single["balanceStock"] == 3.0


def test_product_variants_and_validation(client, theater):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    rv = client.post(f"/api/theater-products/{tid}", headers=headers, json={
        "name": "Coffee", "pricing": {"basePrice": 60},
        "variants": [{"size": "Small", "price": 60}, {"size": "small", "price": 80}],
    })
    assert rv.status_code == 400

    rv = client.post(f"/api/theater-products/{tid}", headers=headers, json={
        "name": "Coffee", "pricing": {"basePrice": 60, "discountPercentage": 150},
    })
    assert rv.status_code == 400
    assert "discountPercentage" in rv.get_json()["fields"]


def test_writes_need_products_page(client, theater, staff_token, product):
    tid = theater["id"]
    # staff holds the products page by default
    rv = client.put(f"/api/theater-products/{tid}/{product['id']}", headers=auth(staff_token),
                    json={"isAvailable": False})
    assert rv.status_code == 200
    assert rv.get_json()["data"]["isAvailable"] is False

    rv = client.post(f"/api/theater-products/{tid}", json={"name": "Anonymous"})
    assert rv.status_code == 401


def test_duplicate_category_name_conflicts(client, theater, product):
    rv = client.post(f"/api/theater-categories/{theater['id']}", headers=auth(theater["adminToken"]),
                     json={"name": "snacks"})
    assert rv.status_code == 409


def test_combo_availability_follows_component_stock(client, theater, staff_token, product):
    tid = theater["id"]
    headers = auth(theater["adminToken"])
    cola = client.post(f"/api/theater-products/{tid}", headers=headers, json={
        "name": "Cola", "pricing": {"basePrice": 50},
    }).get_json()["data"]
    client.post(f"/api/cafe-stock/{tid}/{cola['id']}", headers=headers, json={"invordStock": 5})

    rv = client.post(f"/api/combo-offers/{tid}", headers=headers, json={
        "name": "Movie Combo", "offerPrice": 199, "taxRate": 5,
        "items": [{"productId": product["id"], "quantity": 1}, {"productId": cola["id"], "quantity": 2}],
    })
    assert rv.status_code == 201, rv.get_json()
    combo = rv.get_json()["data"]

    listed = client.get(f"/api/combo-offers/{tid}").get_json()["data"]
    assert listed[0]["name"] == "Movie Combo"
    # popcorn is untracked here but its cafe balance is still 0
    assert listed[0]["availableCount"] == 0

    rv = client.post("/api/orders/theater", headers=auth(staff_token), json={
        "theaterId": tid, "items": [{"comboId": combo["id"], "quantity": 2}],
    })
    assert rv.status_code == 201, rv.get_json()
    order = rv.get_json()["data"]
    assert order["items"][0]["category"] == "Combo"
    assert order["total"] == 417.9

    daily = client.get(f"/api/cafe-stock/{tid}", headers=headers).get_json()["data"]
    assert next(r for r in daily if r["productId"] == cola["id"])["balance"] == 1.0
