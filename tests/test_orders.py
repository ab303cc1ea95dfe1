import pytest
from fastapi import HTTPException

import database
import main


def checkout(client, headers, user_id, items, address, **extra):
    payload = {
        "user_id": user_id,
        "items": items,
        "billing_address": address,
        "payment_method": "credit_card",
        **extra,
    }
    return client.post("/api/orders/checkout", json=payload, headers=headers)


def stock_of(product_id):
    return database.get_document_by_id("product", product_id)["stock"]


def test_checkout_us_40(client, customer, make_product, address):
    user_id, headers = customer
    pid = make_product(price=20.0, stock=5)

    res = checkout(client, headers, user_id, [{"product_id": pid, "quantity": 2}], address)

    assert res.status_code == 200
    data = res.json()["data"]
    assert data["total"] == 53.2
    assert data["order_status"] == "pending"
    assert data["payment_status"] == "pending"
    assert data["order_id"].startswith("ORD-")

    order = database.get_document_by_id("order", data["id"])
    assert order["subtotal"] == 40.0
    assert order["shipping"] == 10.0
    assert order["tax"] == 3.2
    assert order["shipping_address"] == order["billing_address"]
    assert order["items"][0]["total"] == 40.0
    assert order["items"][0]["name"] == "Canvas Tote"
    assert stock_of(pid) == 3


def test_checkout_free_shipping_over_100(client, customer, make_product, address):
    user_id, headers = customer
    pid = make_product(price=60.0)
    address["country"] = "AU"

    res = checkout(client, headers, user_id, [{"product_id": pid, "quantity": 2}], address)

    order = database.get_document_by_id("order", res.json()["data"]["id"])
    assert order["shipping"] == 0
    assert order["tax"] == 12.0
    assert order["total"] == 132.0


def test_checkout_keeps_explicit_shipping_address(client, customer, make_product, address):
    user_id, headers = customer
    shipping = {**address, "city": "Toronto", "country": "CA"}

    res = checkout(client, headers, user_id, [{"product_id": make_product(), "quantity": 1}], address,
                   shipping_address=shipping)

    order = database.get_document_by_id("order", res.json()["data"]["id"])
    assert order["shipping_address"]["city"] == "Toronto"
    # rates follow the billing country
    assert order["shipping"] == 10.0


def test_insufficient_stock_on_one_line_changes_nothing(client, mock_db, customer, make_product, address):
    user_id, headers = customer
    plenty = make_product(name="Mug", stock=10)
    scarce = make_product(name="Lamp", stock=3)
    other = make_product(name="Rug", stock=4)

    res = checkout(client, headers, user_id, [
        {"product_id": plenty, "quantity": 1},
        {"product_id": scarce, "quantity": 5},
        {"product_id": other, "quantity": 1},
    ], address)

    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "Insufficient stock for Lamp. Available: 3"}
    assert (stock_of(plenty), stock_of(scarce), stock_of(other)) == (10, 3, 4)
    assert mock_db["order"].count_documents({}) == 0


def test_duplicate_lines_exceeding_stock_roll_back(client, mock_db, customer, make_product, address):
    user_id, headers = customer
    first = make_product(name="Mug", stock=5)
    pid = make_product(name="Lamp", stock=3)

    res = checkout(client, headers, user_id, [
        {"product_id": first, "quantity": 2},
        {"product_id": pid, "quantity": 2},
        {"product_id": pid, "quantity": 2},
    ], address)

    assert res.status_code == 400
    assert stock_of(first) == 5
    assert stock_of(pid) == 3
    assert mock_db["order"].count_documents({}) == 0


def test_checkout_unknown_and_inactive_products(client, customer, make_product, address):
    user_id, headers = customer
    missing = "5f0000000000000000000000"
    res = checkout(client, headers, user_id, [{"product_id": missing, "quantity": 1}], address)
    assert res.status_code == 404
    assert res.json()["message"] == f"Product {missing} not found"

    inactive = make_product(name="Old Lamp", is_active=False)
    res = checkout(client, headers, user_id, [{"product_id": inactive, "quantity": 1}], address)
    assert res.status_code == 400
    assert res.json()["message"] == "Product Old Lamp is not available"


def test_checkout_missing_information(client, customer, address):
    user_id, headers = customer
    res = checkout(client, headers, user_id, [], address)
    assert res.status_code == 400
    assert res.json()["message"] == "Missing required checkout information"

    res = client.post("/api/orders/checkout", json={"user_id": user_id}, headers=headers)
    assert res.status_code == 400


def test_checkout_requires_auth_and_ownership(client, customer, make_user, make_product, address):
    user_id, _ = customer
    _, other_headers = make_user()
    pid = make_product()

    res = client.post("/api/orders/checkout", json={"user_id": user_id})
    assert res.status_code == 401
    assert res.json()["message"] == "Authorization header is required"

    res = checkout(client, other_headers, user_id, [{"product_id": pid, "quantity": 1}], address)
    assert res.status_code == 403


def test_checkout_clears_cart(client, customer, make_product, address):
    user_id, headers = customer
    pid = make_product()
    client.post("/api/cart/add", json={"user_id": user_id, "product_id": pid, "quantity": 2})

    checkout(client, headers, user_id, [{"product_id": pid, "quantity": 2}], address)

    cart = client.get(f"/api/cart/{user_id}").json()["data"]
    assert cart["items"] == []
    assert cart["item_count"] == 0


def test_checkout_succeeds_when_cart_clear_fails(client, customer, make_product, address, monkeypatch):
    user_id, headers = customer
    pid = make_product()
    client.get(f"/api/cart/{user_id}")

    def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(main, "save_cart_items", broken)
    res = checkout(client, headers, user_id, [{"product_id": pid, "quantity": 1}], address)

    assert res.status_code == 200
    assert stock_of(pid) == 9


def test_order_is_a_snapshot(client, customer, make_product, address):
    user_id, headers = customer
    pid = make_product(price=20.0)
    order_id = checkout(client, headers, user_id, [{"product_id": pid, "quantity": 1}], address).json()["data"]["id"]

    database.update_document("product", pid, {"price": 99.0, "name": "Renamed"})

    order = client.get(f"/api/orders/{order_id}", headers=headers).json()["data"]
    assert order["items"][0]["price"] == 20.0
    assert order["items"][0]["name"] == "Canvas Tote"
    assert order["subtotal"] == 20.0


def test_cancel_pending_order_restores_stock(client, customer, make_product, address):
    user_id, headers = customer
    a = make_product(name="Mug", stock=10)
    b = make_product(name="Lamp", stock=4)
    order_id = checkout(client, headers, user_id, [
        {"product_id": a, "quantity": 3},
        {"product_id": b, "quantity": 4},
    ], address).json()["data"]["id"]
    assert (stock_of(a), stock_of(b)) == (7, 0)

    res = client.put(f"/api/orders/{order_id}/cancel", json={"reason": "changed my mind"}, headers=headers)

    assert res.status_code == 200
    data = res.json()["data"]
    assert data["order_status"] == "cancelled"
    assert data["payment_status"] == "failed"
    assert data["cancellation_reason"] == "changed my mind"
    assert (stock_of(a), stock_of(b)) == (10, 4)


def test_cancel_refunds_completed_payment(client, customer, admin_headers, make_product, address):
    user_id, headers = customer
    order_id = checkout(client, headers, user_id, [{"product_id": make_product(), "quantity": 1}], address).json()["data"]["id"]
    client.put(f"/api/orders/{order_id}/status", json={"payment_status": "completed", "order_status": "confirmed"},
               headers=admin_headers)

    res = client.put(f"/api/orders/{order_id}/cancel", headers=headers)

    assert res.json()["data"]["payment_status"] == "refunded"


@pytest.mark.parametrize("status", ["shipped", "delivered", "cancelled"])
def test_cannot_cancel_after_shipping(client, customer, admin_headers, make_product, address, status):
    user_id, headers = customer
    pid = make_product(stock=5)
    order_id = checkout(client, headers, user_id, [{"product_id": pid, "quantity": 2}], address).json()["data"]["id"]
    client.put(f"/api/orders/{order_id}/status", json={"order_status": status}, headers=admin_headers)

    res = client.put(f"/api/orders/{order_id}/cancel", headers=headers)

    assert res.status_code == 400
    assert res.json()["message"] == f"Cannot cancel order with status: {status}"
    assert stock_of(pid) == 3


def test_overlapping_cancels_restore_stock_once(client, customer, make_product, address, monkeypatch):
    user_id, headers = customer
    pid = make_product(stock=5)
    order_id = checkout(client, headers, user_id, [{"product_id": pid, "quantity": 2}], address).json()["data"]["id"]
    assert stock_of(pid) == 3

    original_release = main.release_stock
    second_cancel = []

    def release_after_second_cancel(items):
        if not second_cancel:
            try:
                main.cancel_order(order_id, None, {"id": user_id, "role": "customer"})
                second_cancel.append(200)
            except HTTPException as exc:
                second_cancel.append(exc.status_code)
        original_release(items)

    monkeypatch.setattr(main, "release_stock", release_after_second_cancel)

    res = client.put(f"/api/orders/{order_id}/cancel", headers=headers)

    assert res.status_code == 200
    assert second_cancel == [400]
    assert stock_of(pid) == 5


def test_status_update_is_admin_only_and_stamps_delivery(client, customer, admin_headers, make_product, address):
    user_id, headers = customer
    order_id = checkout(client, headers, user_id, [{"product_id": make_product(), "quantity": 1}], address).json()["data"]["id"]

    res = client.put(f"/api/orders/{order_id}/status", json={"order_status": "shipped"}, headers=headers)
    assert res.status_code == 403
    assert res.json()["message"] == "Insufficient permissions"

    res = client.put(f"/api/orders/{order_id}/status", json={"order_status": "shipped", "tracking_number": "1Z999"},
                     headers=admin_headers)
    assert res.json()["data"]["tracking_number"] == "1Z999"
    assert res.json()["data"].get("delivered_at") is None

    res = client.put(f"/api/orders/{order_id}/status", json={"order_status": "delivered"}, headers=admin_headers)
    assert res.json()["data"]["order_status"] == "delivered"
    assert res.json()["data"]["delivered_at"] is not None


def test_status_update_rejects_unknown_status(client, customer, admin_headers, make_product, address):
    user_id, headers = customer
    order_id = checkout(client, headers, user_id, [{"product_id": make_product(), "quantity": 1}], address).json()["data"]["id"]

    res = client.put(f"/api/orders/{order_id}/status", json={"order_status": "lost"}, headers=admin_headers)

    assert res.status_code == 400


def test_track_order_returns_reduced_view(client, customer, make_product, address):
    user_id, headers = customer
    public_id = checkout(client, headers, user_id, [{"product_id": make_product(), "quantity": 1}], address).json()["data"]["order_id"]

    res = client.get(f"/api/orders/track/{public_id}")

    assert res.status_code == 200
    data = res.json()["data"]
    assert set(data) == {"order_id", "order_status", "tracking_number", "created_at", "delivered_at", "shipping_address"}
    assert data["shipping_address"] == {"city": "Springfield", "country": "US"}
    assert client.get("/api/orders/track/ORD-NOPE").status_code == 404


def test_user_orders_summaries(client, customer, make_user, admin_headers, make_product, address):
    user_id, headers = customer
    pid = make_product(stock=50)
    ids = [
        checkout(client, headers, user_id, [{"product_id": pid, "quantity": n}], address).json()["data"]["id"]
        for n in (1, 2, 3)
    ]
    client.put(f"/api/orders/{ids[0]}/cancel", headers=headers)

    res = client.get(f"/api/orders/user/{user_id}", headers=headers)
    summaries = res.json()["data"]
    assert [s["id"] for s in summaries] == list(reversed(ids))
    assert summaries[0]["item_count"] == 1
    assert summaries[0]["first_item_image"] == "https://cdn.storefront.io/tote.jpg"

    cancelled = client.get(f"/api/orders/user/{user_id}?status=cancelled", headers=headers).json()["data"]
    assert [s["id"] for s in cancelled] == [ids[0]]

    limited = client.get(f"/api/orders/user/{user_id}?limit=2", headers=headers).json()["data"]
    assert len(limited) == 2

    _, stranger = make_user()
    assert client.get(f"/api/orders/user/{user_id}", headers=stranger).status_code == 403
    assert client.get(f"/api/orders/{ids[1]}", headers=stranger).status_code == 403
    assert client.get(f"/api/orders/user/{user_id}", headers=admin_headers).status_code == 200


def test_get_order_not_found(client, customer):
    _, headers = customer
    assert client.get("/api/orders/5f0000000000000000000000", headers=headers).status_code == 404
    assert client.get("/api/orders/not-an-id", headers=headers).status_code == 404
