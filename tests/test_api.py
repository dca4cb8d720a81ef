import json

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import PASSWORD, WEBHOOK_SIGNATURE, auth_headers, make_product, stripe_event

API = "/api/v1"


@pytest.fixture
def as_customer(customer, settings):
    return auth_headers(customer, settings)


@pytest.fixture
def as_farmer(farmer_user, farmer, settings):
    return auth_headers(farmer_user, settings)


@pytest.fixture
def as_admin(admin, settings):
    return auth_headers(admin, settings)


def _order_body(product, quantity=1, **extra):
    return {
        "items": [{"productId": product["id"], "quantity": quantity}],
        "delivery": {"type": "pickup", "pickupLocation": "Central market",
                     "scheduledDate": "2030-05-01T10:00:00Z"},
        "payment": {"method": "cash"},
        **extra,
    }


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "FarmMarket API running"}
    health = client.get("/test").json()
    assert health["database"] == "✅ Connected"
    assert health["cache"] == "➖ Disabled"


def test_register_login_and_me(client, mailer):
    res = client.post(f"{API}/auth/register", json={
        "firstName": "Ann", "lastName": "Lee", "email": "Ann@Example.com", "password": "hunter22",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "success"
    assert body["data"]["user"]["email"] == "ann@example.com"
    assert "passwordHash" not in body["data"]["user"]
    assert "verificationToken" not in body["data"]["user"]
    assert mailer.templates_sent() == ["verification"]

    again = client.post(f"{API}/auth/register", json={
        "firstName": "Ann", "lastName": "Lee", "email": "ann@example.com", "password": "hunter22",
    })
    assert again.status_code == 409
    assert again.json()["status"] == "error"

    bad = client.post(f"{API}/auth/login", json={"email": "ann@example.com", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json() == {"status": "error", "message": "Invalid email or password"}

    login = client.post(f"{API}/auth/login", json={"email": "ann@example.com", "password": "hunter22"})
    assert login.status_code == 200
    token = login.json()["data"]["token"]
    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["data"]["user"]["firstName"] == "Ann"


def test_password_reset_flow(client, customer, mailer):
    client.post(f"{API}/auth/forgot-password", json={"email": customer["email"]})
    reset_url = mailer.sent[-1]["data"]["resetUrl"]
    token = reset_url.rsplit("/", 1)[-1]

    res = client.post(f"{API}/auth/reset-password", json={"token": token, "password": "brandnew1"})
    assert res.status_code == 200
    assert client.post(f"{API}/auth/reset-password", json={"token": token, "password": "again123"}).status_code == 400

    login = client.post(f"{API}/auth/login", json={"email": customer["email"], "password": "brandnew1"})
    assert login.status_code == 200


def test_validation_errors_use_the_envelope(client):
    res = client.post(f"{API}/auth/register", json={"firstName": "Ann"})
    assert res.status_code == 400
    body = res.json()
    assert body["status"] == "error"
    assert {"field": "email", "message": "Field required"} in body["errors"]


def test_authentication_is_required(client):
    assert client.get(f"{API}/auth/me").status_code == 401
    assert client.get(f"{API}/auth/me", headers={"Authorization": "Bearer nonsense"}).status_code == 401
    assert client.get(f"{API}/orders/my-orders").json()["status"] == "error"


def test_role_checks(client, as_customer, category):
    res = client.post(f"{API}/products", headers=as_customer, json={
        "name": "Kale", "description": "Curly", "categoryId": category["id"],
        "price": {"amount": 50, "unit": "bunch"},
    })
    assert res.status_code == 403
    assert client.get(f"{API}/analytics/dashboard", headers=as_customer).status_code == 403


def test_product_listing_is_paginated(client, db, farmer, category):
    for i in range(3):
        make_product(db, farmer, category, name=f"Apple {i}", amount=10.0 + i, quantity=10)
    res = client.get(f"{API}/products", params={"limit": 2, "sort": "price_asc"})
    body = res.json()
    assert body["pagination"] == {"currentPage": 1, "totalPages": 2, "totalItems": 3, "itemsPerPage": 2}
    assert [p["name"] for p in body["data"]] == ["Apple 0", "Apple 1"]
    assert body["data"][0]["currentPrice"] == 10.0

    search = client.get(f"{API}/products", params={"search": "apple 2"}).json()
    assert [p["name"] for p in search["data"]] == ["Apple 2"]


def test_farmer_manages_own_products(client, as_farmer, category, product):
    created = client.post(f"{API}/products", headers=as_farmer, json={
        "name": "Kale", "description": "Curly", "categoryId": category["id"],
        "price": {"amount": 50, "unit": "bunch"}, "availability": {"quantity": 12},
    })
    assert created.status_code == 201
    assert created.json()["data"]["availability"]["inStock"] is True

    updated = client.put(f"{API}/products/{product['id']}", headers=as_farmer,
                         json={"availability": {"quantity": 0}})
    assert updated.json()["data"]["availability"] == {
        "inStock": False, "quantity": 0, "minOrderQuantity": 1, "maxOrderQuantity": None,
    }


def test_cart_to_order(client, as_customer, product):
    add = client.post(f"{API}/cart/items", headers=as_customer, json={"productId": product["id"], "quantity": 2})
    assert add.json()["data"]["subtotal"] == 180.0
    too_many = client.post(f"{API}/cart/items", headers=as_customer, json={"productId": product["id"], "quantity": 9})
    assert too_many.status_code == 400

    res = client.post(f"{API}/orders", headers=as_customer, json=_order_body(product, 2, notes="Ring twice"))
    assert res.status_code == 201
    order = res.json()["data"]
    assert order["pricing"]["total"] == 180.0
    assert order["notes"] == {"customer": "Ring twice"}

    assert client.get(f"{API}/cart", headers=as_customer).json()["data"]["items"] == []
    mine = client.get(f"{API}/orders/my-orders", headers=as_customer).json()
    assert mine["pagination"]["totalItems"] == 1
    assert client.get(f"{API}/orders/{order['id']}/qr", headers=as_customer).json()["data"]["qr"].startswith("data:")


def test_stock_errors_are_reported(client, as_customer, product):
    res = client.post(f"{API}/orders", headers=as_customer, json=_order_body(product, 6))
    assert res.status_code == 400
    assert res.json()["status"] == "error"
    assert "Not enough stock" in res.json()["message"]


def test_only_customers_place_orders(client, as_farmer, product):
    assert client.post(f"{API}/orders", headers=as_farmer, json=_order_body(product)).status_code == 403


def test_order_status_and_cancel_routes(client, as_customer, as_farmer, product):
    order = client.post(f"{API}/orders", headers=as_customer, json=_order_body(product)).json()["data"]

    confirmed = client.put(f"{API}/orders/{order['id']}/status", headers=as_farmer, json={"status": "confirmed"})
    assert confirmed.json()["data"]["status"] == "confirmed"
    backwards = client.put(f"{API}/orders/{order['id']}/status", headers=as_farmer, json={"status": "confirmed"})
    assert backwards.status_code == 400

    cancelled = client.put(f"{API}/orders/{order['id']}/cancel", headers=as_customer, json={"reason": "Away"})
    assert cancelled.json()["data"]["status"] == "cancelled"
    farm_orders = client.get(f"{API}/orders/farmer-orders", headers=as_farmer).json()
    assert farm_orders["data"][0]["status"] == "cancelled"


def test_promo_validation_endpoint(client, as_admin, as_customer):
    created = client.post(f"{API}/promo-codes", headers=as_admin, json={
        "code": "welcome10", "name": "Welcome", "type": "percentage", "value": 10,
        "minOrderAmount": 1000, "maxDiscountAmount": 500,
        "validFrom": "2020-01-01T00:00:00Z", "validUntil": "2099-01-01T00:00:00Z",
    })
    assert created.status_code == 201
    assert created.json()["data"]["code"] == "WELCOME10"

    res = client.post(f"{API}/promo-codes/validate", headers=as_customer,
                      json={"code": "WELCOME10", "orderAmount": 3000})
    assert res.json()["data"]["discount"] == 300
    low = client.post(f"{API}/promo-codes/validate", headers=as_customer,
                      json={"code": "WELCOME10", "orderAmount": 500})
    assert low.status_code == 400
    missing = client.post(f"{API}/promo-codes/validate", headers=as_customer,
                          json={"code": "NOPE", "orderAmount": 500})
    assert missing.status_code == 404


def test_stripe_webhook_endpoint(client, as_customer, product):
    order = client.post(f"{API}/orders", headers=as_customer,
                        json=_order_body(product, payment={"method": "card"})).json()["data"]
    intent = client.post(f"{API}/payments/intent", headers=as_customer, json={"orderId": order["id"]})
    assert intent.status_code == 201
    assert intent.json()["data"]["clientSecret"] == "pi_test_1_secret"

    payload = json.dumps(stripe_event("evt_1", "payment_intent.succeeded", "pi_test_1"))
    forged = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": "forged"})
    assert forged.status_code == 400

    first = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": WEBHOOK_SIGNATURE})
    replay = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": WEBHOOK_SIGNATURE})
    assert first.json() == {"received": True}
    assert replay.json() == {"received": True, "duplicate": True}

    stored = client.get(f"{API}/orders/{order['id']}", headers=as_customer).json()["data"]
    assert stored["payment"]["status"] == "paid"
    assert stored["status"] == "confirmed"


def test_notifications_inbox(client, services, customer, as_customer):
    first = services.notifier.send(customer["id"], "system", "Hello", "First")
    services.notifier.send(customer["id"], "promotion", "Sale", "Second")

    inbox = client.get(f"{API}/notifications", headers=as_customer).json()
    assert inbox["unreadCount"] == 2
    assert inbox["pagination"]["totalItems"] == 2

    read = client.put(f"{API}/notifications/{first['id']}/read", headers=as_customer)
    assert read.json()["data"]["isRead"] is True
    assert client.get(f"{API}/notifications", headers=as_customer,
                      params={"unreadOnly": True}).json()["unreadCount"] == 1

    assert client.put(f"{API}/notifications/read-all", headers=as_customer).json()["data"] == {"updated": 1}
    assert client.delete(f"{API}/notifications/{first['id']}", headers=as_customer).status_code == 200
    assert client.delete(f"{API}/notifications/{first['id']}", headers=as_customer).status_code == 404


def test_broadcast_is_admin_only(client, db, other_customer, as_admin, as_customer):
    body = {"title": "Market day", "message": "Fresh berries on Saturday", "type": "promotion", "role": "customer"}
    assert client.post(f"{API}/notifications/bulk", headers=as_customer, json=body).status_code == 403

    res = client.post(f"{API}/notifications/bulk", headers=as_admin, json=body)
    assert res.status_code == 201
    assert res.json()["data"] == {"recipients": 2, "sent": 2}
    assert db["notification"].count_documents({"type": "promotion"}) == 2


def test_delivery_lifecycle(client, as_customer, as_farmer, product):
    order = client.post(f"{API}/orders", headers=as_customer, json=_order_body(product)).json()["data"]

    created = client.post(f"{API}/deliveries", headers=as_farmer, json={"orderId": order["id"]})
    assert created.status_code == 201
    delivery = created.json()["data"]
    assert delivery["status"] == "pending"
    duplicate = client.post(f"{API}/deliveries", headers=as_farmer, json={"orderId": order["id"]})
    assert duplicate.status_code == 409

    assigned = client.put(f"{API}/deliveries/{delivery['id']}/assign", headers=as_farmer,
                          json={"driver": {"name": "Ivan", "phone": "+7 900 000 00 00"}})
    assert assigned.json()["data"]["status"] == "assigned"

    early_rating = client.post(f"{API}/deliveries/{delivery['id']}/rate", headers=as_customer, json={"score": 5})
    assert early_rating.status_code == 400

    for status in ("in_transit", "delivered"):
        res = client.put(f"{API}/deliveries/{delivery['id']}/status", headers=as_farmer, json={"status": status})
        assert res.json()["data"]["status"] == status
    stored = client.get(f"{API}/orders/{order['id']}", headers=as_customer).json()["data"]
    assert stored["status"] == "delivered"

    backwards = client.put(f"{API}/deliveries/{delivery['id']}/status", headers=as_farmer,
                           json={"status": "in_transit"})
    assert backwards.status_code == 400

    rated = client.post(f"{API}/deliveries/{delivery['id']}/rate", headers=as_customer,
                        json={"score": 5, "comment": "On time"})
    assert rated.json()["data"]["rating"]["score"] == 5
    twice = client.post(f"{API}/deliveries/{delivery['id']}/rate", headers=as_customer, json={"score": 1})
    assert twice.status_code == 400

    listed = client.get(f"{API}/deliveries", headers=as_customer).json()
    assert [d["id"] for d in listed["data"]] == [delivery["id"]]


def test_pickup_points(client, as_admin, as_customer):
    body = {"name": "Central market", "address": {"street": "Lenina 1", "city": "Tula"},
            "workingHours": {"monday": {"start": "08:00", "end": "18:00"}}}
    assert client.post(f"{API}/pickup-points", headers=as_customer, json=body).status_code == 403
    created = client.post(f"{API}/pickup-points", headers=as_admin, json=body)
    assert created.status_code == 201
    point_id = created.json()["data"]["id"]

    assert [p["id"] for p in client.get(f"{API}/pickup-points", params={"city": "tula"}).json()["data"]] == [point_id]
    assert client.get(f"{API}/pickup-points", params={"city": "Moscow"}).json()["data"] == []

    client.delete(f"{API}/pickup-points/{point_id}", headers=as_admin)
    assert client.get(f"{API}/pickup-points").json()["data"] == []


def test_admin_analytics_and_jobs(client, as_admin, as_customer, product):
    client.post(f"{API}/orders", headers=as_customer, json=_order_body(product, 2))
    dashboard = client.get(f"{API}/analytics/dashboard", headers=as_admin).json()["data"]
    assert dashboard["orders"]["total"] == 1
    assert dashboard["revenue"] == 180.0

    jobs = client.get(f"{API}/analytics/jobs", headers=as_admin).json()["data"]
    assert {job["name"] for job in jobs} >= {"stock-alerts", "daily-reports"}
    run = client.post(f"{API}/analytics/jobs/stock-alerts/run", headers=as_admin).json()["data"]
    assert run["job"] == "stock-alerts" and run["skipped"] is False
    assert client.post(f"{API}/analytics/jobs/nope/run", headers=as_admin).status_code == 404


def test_websocket_requires_a_valid_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws/notifications?token=nonsense"):
            pass
    assert exc.value.code == 1008


def test_websocket_answers_ping(client, customer, settings):
    token = auth_headers(customer, settings)["Authorization"].split()[1]
    with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"


def test_websocket_is_unregistered_when_the_handler_fails(client, services, customer, settings):
    token = auth_headers(customer, settings)["Authorization"].split()[1]
    manager = services.notifier.connections
    with pytest.raises(KeyError):
        with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"
            assert manager.is_online(customer["id"])
            # binary frames have no "text" key
            ws.send_bytes(b"\x00")
            ws.receive_text()
    assert not manager.is_online(customer["id"])


def test_login_with_fixture_password(client, customer):
    res = client.post(f"{API}/auth/login", json={"email": customer["email"], "password": PASSWORD})
    assert res.status_code == 200
    assert res.json()["data"]["user"]["role"] == "customer"
