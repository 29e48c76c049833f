from bson import ObjectId


def test_root(client):
    assert client.get("/").json() == {"message": "Storefront API running"}


def test_submit_order(client, db, make_product, order_body):
    product = make_product(price=100000, stock=3)

    resp = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 2}]))

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    data = body["data"]
    assert set(data) == {"orderId", "orderNumber", "totalAmount", "paymentMethod", "status", "paymentStatus"}
    assert data["totalAmount"] == 215000
    assert data["paymentMethod"] == "Bank Transfer"
    assert data["status"] == "PENDING"
    assert data["paymentStatus"] == "PENDING"
    assert db["product"].find_one({"_id": ObjectId(product["id"])})["stock"] == 1


def test_client_totals_are_ignored(client, make_product, order_body):
    product = make_product(price=100000)
    body = order_body([{"productId": product["id"], "quantity": 1, "price": 1}], subtotal=1, shippingCost=0, totalAmount=1)

    resp = client.post("/api/orders", json=body)

    assert resp.json()["data"]["totalAmount"] == 115000


def test_missing_fields_are_rejected(client, order_body):
    body = order_body([])
    del body["customerInfo"]

    resp = client.post("/api/orders", json=body)

    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_empty_cart_is_rejected(client, order_body):
    resp = client.post("/api/orders", json=order_body([]))
    assert resp.status_code == 400


def test_bad_postal_code_is_rejected(client, make_product, order_body):
    product = make_product()
    body = order_body([{"productId": product["id"], "quantity": 1}])
    body["shippingAddress"]["postalCode"] = "ABCDE"

    resp = client.post("/api/orders", json=body)

    assert resp.status_code == 400
    assert "postalCode" in resp.json()["error"]


def test_insufficient_stock_response(client, db, make_product, order_body):
    product = make_product(name="Batik Tulis", stock=1)

    resp = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 5}]))

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Insufficient stock for Batik Tulis (available: 1)"}
    assert db["order"].count_documents({}) == 0


def test_idempotency_key_header_replays(client, db, make_product, order_body):
    product = make_product(stock=5)
    body = order_body([{"productId": product["id"], "quantity": 1}])

    first = client.post("/api/orders", json=body, headers={"Idempotency-Key": "abc"})
    second = client.post("/api/orders", json=body, headers={"Idempotency-Key": "abc"})

    assert first.json()["data"]["orderNumber"] == second.json()["data"]["orderNumber"]
    assert db["order"].count_documents({}) == 1


def test_lookup_orders(client, make_product, order_body):
    product = make_product()
    created = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 1}])).json()["data"]

    by_number = client.get("/api/orders", params={"orderNumber": created["orderNumber"]}).json()
    by_email = client.get("/api/orders", params={"email": "siti@example.com"}).json()

    assert by_number["data"]["orders"][0]["id"] == created["orderId"]
    assert by_number["data"]["orders"][0]["items"][0]["quantity"] == 1
    assert len(by_email["data"]["orders"]) == 1
    assert client.get("/api/orders").status_code == 400


def test_webhook_flow(client, db, make_product, order_body, notification):
    product = make_product()
    created = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 1}])).json()["data"]
    payload = notification(created["orderNumber"])

    first = client.post("/api/webhooks/midtrans", json=payload)
    second = client.post("/api/webhooks/midtrans", json=payload)

    assert first.status_code == 200
    assert set(first.json()["data"]) == {"orderId", "orderNumber", "paymentStatus", "alreadyProcessed"}
    assert first.json()["data"]["paymentStatus"] == "PAID"
    assert second.status_code == 200
    assert second.json()["data"]["alreadyProcessed"] is True


def test_webhook_rejections(client, make_product, order_body, notification):
    product = make_product()
    created = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 1}])).json()["data"]

    bad = notification(created["orderNumber"], signature_key="forged")
    unknown = notification("ORD-20000101-000001")

    assert client.post("/api/webhooks/midtrans", json=bad).status_code == 400
    assert client.post("/api/webhooks/midtrans", json=unknown).status_code == 404


def test_webhook_without_server_key(client, settings, notification):
    settings.midtrans_server_key = None
    resp = client.post("/api/webhooks/midtrans", json=notification("ORD-20261019-000001"))
    assert resp.status_code == 500


def test_cart_summary(client):
    resp = client.post("/api/cart/summary", json={"items": [
        {"productId": "p1", "unitPrice": 100000, "quantity": 1},
        {"productId": "p1", "unitPrice": 100000, "quantity": 1},
        {"productId": "p2", "variantId": "v1", "unitPrice": 60000, "quantity": 1},
    ]})

    data = resp.json()["data"]
    assert len(data["items"]) == 2
    assert data["summary"] == {"itemCount": 2, "totalItems": 3, "subtotal": 260000, "shipping": 0, "total": 260000}


def test_catalog_endpoints(client, make_product):
    make_product(name="Kain Songket", slug="kain-songket", price=300000)

    listed = client.get("/api/products", params={"search": "songket"}).json()["data"]
    assert listed["products"][0]["slug"] == "kain-songket"
    assert client.get("/api/products/kain-songket").json()["data"]["name"] == "Kain Songket"
    assert client.get("/api/products/nope").status_code == 404
    assert client.get("/api/categories").json()["data"][0]["slug"] == "dresses"


def test_admin_requires_token(client, make_product, order_body):
    product = make_product()
    created = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 1}])).json()["data"]

    resp = client.delete(f"/api/admin/orders/{created['orderId']}")

    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_admin_delete_only_pending(client, db, admin_headers, make_product, order_body):
    product = make_product()
    keep = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 1}])).json()["data"]
    drop = client.post("/api/orders", json=order_body([{"productId": product["id"], "quantity": 1}])).json()["data"]

    confirm = client.put(f"/api/admin/orders/{keep['orderId']}", json={"status": "CONFIRMED"}, headers=admin_headers)
    rejected = client.delete(f"/api/admin/orders/{keep['orderId']}", headers=admin_headers)
    deleted = client.delete(f"/api/admin/orders/{drop['orderId']}", headers=admin_headers)

    assert confirm.json()["data"]["status"] == "CONFIRMED"
    assert rejected.status_code == 409
    assert rejected.json()["error"] == "Can only delete pending orders"
    assert deleted.status_code == 200
    assert db["order"].count_documents({}) == 1


def test_admin_catalog_writes(client, admin_headers, category):
    created = client.post("/api/admin/products", headers=admin_headers, json={
        "name": "Selendang", "slug": "selendang", "price": 50000, "stock": 4, "categoryId": category["id"],
    })
    assert created.status_code == 201
    product_id = created.json()["data"]["id"]

    duplicate = client.post("/api/admin/products", headers=admin_headers, json={"name": "X", "slug": "selendang", "price": 1})
    variant = client.post(f"/api/admin/products/{product_id}/variants", headers=admin_headers, json={"color": "Gold", "stock": 2, "additionalPrice": 10000})
    corrected = client.put(f"/api/admin/products/{product_id}", headers=admin_headers, json={"stock": 9})
    slug = client.get("/api/admin/products/check-slug", headers=admin_headers, params={"slug": "selendang"})

    assert duplicate.status_code == 409
    assert variant.status_code == 201
    assert variant.json()["data"]["additional_price"] == 10000
    assert corrected.json()["data"]["stock"] == 9
    assert slug.json()["data"]["available"] is False
