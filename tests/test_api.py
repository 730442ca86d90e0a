import json

import pytest
from sqlalchemy import select

from storefront.auth import create_access_token
from storefront.models import Notification, Order, Product

from conftest import (
    WEBHOOK_SECRET, make_category, make_coupon, make_order, make_product, make_shipping_provider,
    make_user, reload, sign_payload,
)


def _bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


# 👤 Авторизация
async def test_register_and_login(client):
    res = await client.post("/api/auth/register", json={
        "email": "new@example.com", "full_name": "New Buyer", "password": "s3cret-pass",
    })
    assert res.status_code == 201
    assert res.json()["role"] == "customer"

    again = await client.post("/api/auth/register", json={
        "email": "new@example.com", "full_name": "Dup", "password": "whatever1",
    })
    assert again.status_code == 400
    assert again.json() == {"error": "Email already registered"}

    login = await client.post("/api/auth/login", json={"email": "new@example.com", "password": "s3cret-pass"})
    assert login.status_code == 200
    token = login.json()["access_token"]
    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "new@example.com"


async def test_protected_route_without_session(client):
    res = await client.get("/api/orders")
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized"}


# 🛍️ Каталог
async def test_product_listing_filters_and_sorts(client, session):
    apparel = await make_category(session, slug="apparel", name="Apparel")
    home = await make_category(session, slug="home", name="Home")
    await make_product(session, name="Linen Shirt", price="45.00", stock=3, category=apparel)
    await make_product(session, name="Cotton Tee", price="20.00", stock=8, category=apparel)
    await make_product(session, name="Sold Out Hoodie", price="60.00", stock=0, category=apparel)
    await make_product(session, name="Mug", price="12.00", stock=4, category=home)

    res = await client.get("/api/products", params={
        "category": "apparel", "sort": "price-asc", "inStock": "true", "min": "10",
    })
    body = res.json()
    assert res.status_code == 200
    assert [p["name"] for p in body["products"]] == ["Cotton Tee", "Linen Shirt"]
    assert body["total"] == 2
    assert body["pageSize"] == 12

    res = await client.get("/api/products", params={"q": "mug", "sort": "nonsense"})
    assert [p["name"] for p in res.json()["products"]] == ["Mug"]

    res = await client.get("/api/products", params={"sort": "price-desc", "page": 2, "pageSize": 3})
    assert [p["name"] for p in res.json()["products"]] == ["Mug"]
    assert res.json()["total"] == 4


async def test_categories_with_counts(client, session):
    apparel = await make_category(session, slug="apparel", name="Apparel")
    await make_category(session, slug="home", name="Home")
    await make_product(session, category=apparel)
    await make_product(session, category=apparel)

    res = await client.get("/api/categories")
    assert [(c["slug"], c["product_count"]) for c in res.json()] == [("apparel", 2), ("home", 0)]


async def test_product_crud_requires_auth_and_unique_slug(client, session, auth_headers):
    payload = {"name": "Canvas Tote", "slug": "canvas-tote", "price": "15.00", "stock_quantity": 5}
    assert (await client.post("/api/products", json=payload)).status_code == 401

    created = await client.post("/api/products", json=payload, headers=auth_headers)
    assert created.status_code == 201
    product_id = created.json()["id"]

    dup = await client.post("/api/products", json=payload, headers=auth_headers)
    assert dup.status_code == 400

    updated = await client.put(f"/api/products/{product_id}", json={**payload, "stock_quantity": 2},
                               headers=auth_headers)
    assert updated.json()["stock_quantity"] == 2

    assert (await client.delete(f"/api/products/{product_id}", headers=auth_headers)).status_code == 204
    assert (await client.get(f"/api/products/{product_id}")).status_code == 404


# 🛠️ Режим обслуживания
async def test_maintenance_toggle_sets_cookie(client):
    res = await client.post("/api/maintenance", json={"enabled": True})
    assert res.json() == {"success": True, "maintenanceMode": True}

    cookie = res.headers["set-cookie"]
    assert "maintenanceMode=true" in cookie
    assert "Max-Age=604800" in cookie
    assert "Path=/" in cookie
    assert "samesite=lax" in cookie.lower()
    assert "httponly" not in cookie.lower()

    status = await client.get("/api/maintenance")
    assert status.json() == {"maintenanceMode": True, "envMode": False}


async def test_maintenance_redirects_pages_but_not_api(client):
    client.cookies.set("maintenanceMode", "true")

    page = await client.get("/")
    assert page.status_code == 307
    assert page.headers["location"] == "/maintenance"

    assert (await client.get("/api/products")).status_code == 200

    notice = await client.get("/maintenance")
    assert notice.status_code == 503
    assert "maintenance" in notice.text

    client.cookies.set("maintenanceMode", "false")
    assert (await client.get("/")).status_code == 200


# 📦 Заказы
async def test_create_order_reserves_stock(client, session, user, auth_headers):
    tee = await make_product(session, price="20.00", stock=5)
    res = await client.post("/api/orders", headers=auth_headers, json={
        "items": [{"product_id": tee.id, "quantity": 2}], "shipping_cost": "5.00",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "pending"
    assert body["order_number"].startswith("SF")
    assert body["total"] == "45.00"
    assert [(i["product_title"], i["quantity"]) for i in body["items"]] == [(tee.name, 2)]
    assert (await reload(session, Product, tee.id)).stock_quantity == 3

    res = await session.execute(select(Notification).where(Notification.user_id == user.id))
    assert [n.type for n in res.scalars().all()] == ["order_created"]


async def test_create_order_without_enough_stock(client, session, auth_headers):
    tee = await make_product(session, stock=5)
    mug = await make_product(session, name="Mug", stock=1)
    res = await client.post("/api/orders", headers=auth_headers, json={
        "items": [{"product_id": tee.id, "quantity": 2}, {"product_id": mug.id, "quantity": 3}],
    })
    assert res.status_code == 400
    assert res.json() == {"error": "Not enough stock for Mug"}
    assert (await reload(session, Product, tee.id)).stock_quantity == 5
    assert (await session.execute(select(Order))).scalars().all() == []


async def test_create_order_rejects_empty_cart(client, auth_headers):
    res = await client.post("/api/orders", headers=auth_headers, json={"items": []})
    assert res.status_code == 400
    assert res.json()["error"].startswith("items")


async def test_cancel_order_restores_stock(client, session, auth_headers):
    tee = await make_product(session, stock=5)
    created = (await client.post("/api/orders", headers=auth_headers, json={
        "items": [{"product_id": tee.id, "quantity": 4}],
    })).json()

    res = await client.post(f"/api/orders/{created['id']}/cancel", headers=auth_headers,
                            json={"reason": "Ordered the wrong size"})
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert res.json()["cancel_reason"] == "Ordered the wrong size"
    assert (await reload(session, Product, tee.id)).stock_quantity == 5

    again = await client.post(f"/api/orders/{created['id']}/cancel", headers=auth_headers,
                              json={"reason": "again"})
    assert again.status_code == 400


async def test_orders_are_private(client, session, user):
    product = await make_product(session)
    order = await make_order(session, user, [(product, 1)])
    stranger = await make_user(session)

    assert (await client.get(f"/api/orders/{order.id}", headers=_bearer(stranger))).status_code == 404
    assert (await client.get(f"/api/orders/{order.id}", headers=_bearer(user))).status_code == 200


async def test_order_history_progress_and_stats(client, session, user, auth_headers):
    product = await make_product(session)
    pending = await make_order(session, user, [(product, 1)])
    await make_order(session, user, [(product, 2)], status="shipped")
    await make_order(session, user, [(product, 1)], status="delivered")

    history = await client.get("/api/orders", headers=auth_headers, params={"status": "pending"})
    assert [o["id"] for o in history.json()] == [pending.id]
    assert history.json()[0]["items_count"] == 1

    stats = await client.get("/api/orders/stats", headers=auth_headers)
    assert stats.json() == {"total": 3, "pending": 1, "processing": 1, "completed": 1}

    progress = (await client.get(f"/api/orders/{pending.id}/progress", headers=auth_headers)).json()
    assert progress["status"] == "pending"
    assert [s["state"] for s in progress["steps"]] == ["current", "upcoming", "upcoming", "upcoming", "upcoming"]


async def test_admin_moves_order_forward(client, session, user, auth_headers):
    product = await make_product(session)
    order = await make_order(session, user, [(product, 1)], status="paid")

    res = await client.patch(f"/api/admin/orders/{order.id}/status", headers=auth_headers,
                             json={"status": "processing"})
    assert res.json()["status"] == "processing"

    res = await client.patch(f"/api/admin/orders/{order.id}/status", headers=auth_headers,
                             json={"status": "shipped", "tracking_number": "EE123456789MY"})
    assert res.json()["tracking_number"] == "EE123456789MY"
    assert res.json()["shipped_at"] is not None

    backwards = await client.patch(f"/api/admin/orders/{order.id}/status", headers=auth_headers,
                                   json={"status": "processing"})
    assert backwards.status_code == 400


async def test_apply_coupon_route(client, session, user, auth_headers):
    product = await make_product(session, price="100.00")
    order = await make_order(session, user, [(product, 1)])
    await make_coupon(session, code="SAVE20", value="20")

    res = await client.post(f"/api/orders/{order.id}/coupon", headers=auth_headers, json={"code": "save20"})
    assert res.status_code == 200
    assert res.json()["discount"] == "20.00"
    assert res.json()["total"] == "80.00"

    res = await client.post("/api/coupons/validate", headers=auth_headers,
                            json={"code": "SAVE20", "subtotal": "100"})
    assert res.json()["is_valid"] is False
    assert res.json()["error_message"] == "You have already used this coupon"


# 🚚 Доставка
async def test_shipping_rates(client, session):
    assert (await client.post("/api/shipping/rates", json={"total_weight": 1})).json() == []

    await make_shipping_provider(session, "dhl", "DHL Express", [
        {"code": "express", "name": "Express", "base_cost": 25, "cost_per_kg": 8, "min_cost": 30},
    ])
    res = await client.post("/api/shipping/rates", json={
        "address": {"country": "BN", "postal_code": "BS8811"}, "total_weight": 1,
    })
    options = res.json()
    assert [o["provider_code"] for o in options] == ["dhl"]

    bad = await client.post("/api/shipping/rates", json={"total_weight": -1})
    assert bad.status_code == 400


@pytest.mark.parametrize("body", [
    b'{"total_weight": NaN}',
    b'{"total_weight": Infinity}',
    b'{"total_weight": 1, "dimensions": {"length": NaN, "width": 1, "height": 1}}',
])
async def test_shipping_rates_reject_non_finite_weight(client, body):
    res = await client.post("/api/shipping/rates", content=body,
                            headers={"content-type": "application/json"})
    assert res.status_code == 400


# 💳 Оплата
async def test_checkout_route_guards(client, session, user, auth_headers):
    assert (await client.post("/api/checkout", json={"orderId": 1})).status_code == 401

    res = await client.post("/api/checkout", headers=auth_headers, json={})
    assert res.status_code == 400
    assert res.json() == {"error": "Order ID is required"}

    assert (await client.post("/api/checkout", headers=auth_headers, json={"orderId": 999})).status_code == 404

    product = await make_product(session)
    paid = await make_order(session, user, [(product, 1)], status="paid")
    res = await client.post("/api/checkout", headers=auth_headers, json={"orderId": paid.id})
    assert res.status_code == 400
    assert res.json() == {"error": "Order is not pending payment"}


async def test_checkout_and_verify_flow(client, session, gateway, user, auth_headers):
    product = await make_product(session, price="30.00")
    order = await make_order(session, user, [(product, 1)])

    res = await client.post("/api/checkout", headers={**auth_headers, "Origin": "https://shop.example"},
                            json={"orderId": order.id})
    assert res.status_code == 200
    session_id = res.json()["sessionId"]
    assert res.json()["url"] == f"https://checkout.test/{session_id}"
    assert gateway.created[0]["success_url"].startswith("https://shop.example/checkout/success")

    missing = await client.get("/api/checkout/verify")
    assert missing.status_code == 400
    assert missing.json() == {"error": "No session ID"}

    unpaid = await client.get("/api/checkout/verify", params={"session_id": session_id})
    assert unpaid.json() == {"success": False, "orderId": None}

    gateway.pay(session_id)
    paid = await client.get("/api/checkout/verify", params={"session_id": session_id})
    assert paid.json() == {"success": True, "orderId": order.id}
    assert (await reload(session, Order, order.id)).status == "paid"


async def test_webhook_signature_is_checked(client, session, gateway, user):
    product = await make_product(session)
    order = await make_order(session, user, [(product, 1)])
    created = await gateway.create_checkout_session(
        line_items=[], currency="USD", success_url="", cancel_url="",
        metadata={"order_id": str(order.id)},
    )
    event = {"id": "evt_1", "type": "checkout.session.completed",
             "data": {"object": gateway.pay(created["id"])}}
    body = json.dumps(event).encode()

    bad = await client.post("/api/webhook/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=deadbeef"})
    assert bad.status_code == 400
    assert (await reload(session, Order, order.id)).status == "pending"

    res = await client.post("/api/webhook/stripe", content=body,
                            headers={"Stripe-Signature": sign_payload(body, WEBHOOK_SECRET)})
    assert res.status_code == 200
    assert res.json() == {"received": True}
    assert (await reload(session, Order, order.id)).status == "paid"


# 👤 Администрирование и уведомления
async def test_admin_create_user(client, auth_headers):
    short = await client.post("/api/admin/create-user", headers=auth_headers, json={
        "email": "ops@example.com", "password": "short", "full_name": "Ops",
    })
    assert short.status_code == 400

    res = await client.post("/api/admin/create-user", headers=auth_headers, json={
        "email": "ops@example.com", "password": "long-enough", "full_name": "Ops",
    })
    assert res.status_code == 201
    assert res.json()["success"] is True

    missing = await client.put("/api/admin/create-user", headers=auth_headers, json={"user_id": 999})
    assert missing.status_code == 404


async def test_notifications_mark_read(client, session, auth_headers):
    product = await make_product(session)
    await client.post("/api/orders", headers=auth_headers, json={"items": [{"product_id": product.id, "quantity": 1}]})

    listed = (await client.get("/api/notifications", headers=auth_headers, params={"unread": "true"})).json()
    assert [n["type"] for n in listed] == ["order_created"]

    res = await client.post(f"/api/notifications/{listed[0]['id']}/read", headers=auth_headers)
    assert res.json()["is_read"] is True
    assert (await client.get("/api/notifications", headers=auth_headers, params={"unread": "true"})).json() == []
