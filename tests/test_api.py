"""Tests for the FastAPI routes."""
import json
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from conftest import ADMIN_AUTH, CUSTOMER_AUTH, add_coupon, add_product, address
from payments import GoPayFastClient, payfast_signature


def order_body(product_id, option_id, quantity=1, method="COD", **extra):
    body = {
        "items": [{"productId": product_id, "priceOptionId": option_id, "quantity": quantity}],
        "shippingAddress": {
            "fullName": "Ayesha Khan",
            "address": "12 Canal Road",
            "city": "Lahore",
            "postalCode": "54000",
            "country": "Pakistan",
            "email": "ayesha@shop.test",
            "phone": "+923001234567",
        },
        "paymentMethod": method,
    }
    body.update(extra)
    return body


class TestRoot:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_database_check_reads_config(self, client, db, monkeypatch):
        monkeypatch.setattr("main.database.db", db)
        monkeypatch.setenv("DATABASE_URL", "mongodb://ignored")
        response = client.get("/test")
        assert response.status_code == 200
        assert response.json()["database_url"] == "\u274c Not Set"
        assert response.json()["connection_status"] == "Connected"


class TestCatalog:
    def test_list_products_carries_sale_prices(self, client, db):
        add_product(db, price=1000, sale=10)
        response = client.get("/products")
        assert response.status_code == 200
        product = response.json()[0]
        assert product["lowest_price"] == 900
        assert product["has_active_sales"] is True

    def test_unknown_product(self, client):
        response = client.get(f"/products/{ObjectId()}")
        assert response.status_code == 404
        assert response.json()["error_type"] == "ProductNotFoundError"

    def test_admin_creates_product(self, client, admin):
        response = client.post(
            "/admin/products",
            json={
                "name": "Desi Ghee",
                "stock": 4,
                "sale": 20,
                "priceOptions": [{"type": "weight-based", "weight": 1000, "price": 2500}],
            },
            headers=ADMIN_AUTH,
        )
        assert response.status_code == 201
        option = response.json()["price_options"][0]
        assert ObjectId.is_valid(option["id"])

    def test_admin_updates_sale(self, client, db, admin):
        product_id, _ = add_product(db, price=1000)
        response = client.patch(f"/admin/products/{product_id}", json={"sale": 50}, headers=ADMIN_AUTH)
        assert response.status_code == 200
        assert response.json()["lowest_price"] == 500

    def test_customer_cannot_create_product(self, client, customer):
        response = client.post("/admin/products", json={"name": "X"}, headers=CUSTOMER_AUTH)
        assert response.status_code == 403


class TestCreateOrder:
    def test_guest_cod_order(self, client, db, notifier):
        product_id, option_id = add_product(db, price=1000, stock=3)
        response = client.post("/orders", json=order_body(product_id, option_id, 2))
        assert response.status_code == 201
        data = response.json()
        assert data["total_amount"] == 2100
        assert data["status"] == "Processing"
        assert data["shipping_address"]["full_name"] == "Ayesha Khan"
        assert [e["to"] for e in notifier.emails] == ["ayesha@shop.test"]

    def test_bank_transfer_multipart_with_proof(self, client, db, image_store):
        product_id, option_id = add_product(db)
        body = order_body(product_id, option_id, method="BankTransfer")
        response = client.post(
            "/orders",
            data={
                "items": json.dumps(body["items"]),
                "shippingAddress": json.dumps(body["shippingAddress"]),
                "paymentMethod": "BankTransfer",
            },
            files={"paymentScreenshot": ("proof.png", b"png-bytes", "image/png")},
        )
        assert response.status_code == 201
        assert response.json()["payment_proof"]["public_id"] == "payments/1"
        assert image_store.saved[0]["data"] == b"png-bytes"

    def test_bank_transfer_without_proof(self, client, db):
        product_id, option_id = add_product(db)
        response = client.post("/orders", json=order_body(product_id, option_id, method="BankTransfer"))
        assert response.status_code == 400
        assert "Payment proof screenshot is required" in response.json()["detail"]

    def test_missing_shipping_fields(self, client, db):
        product_id, option_id = add_product(db)
        body = order_body(product_id, option_id)
        body["shippingAddress"]["city"] = ""
        response = client.post("/orders", json=body)
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing shipping fields: city"

    def test_empty_items(self, client):
        response = client.post("/orders", json={"items": [], "shippingAddress": address(), "paymentMethod": "COD"})
        assert response.status_code == 400

    def test_insufficient_stock_message(self, client, db):
        product_id, option_id = add_product(db, stock=1)
        response = client.post("/orders", json=order_body(product_id, option_id, 2))
        assert response.status_code == 400
        assert response.json()["detail"] == "Insufficient stock for Basmati Rice. Available: 1"

    def test_rejected_checkout_discards_proof(self, client, db, image_store):
        product_id, option_id = add_product(db, stock=1)
        body = order_body(product_id, option_id, quantity=2, method="BankTransfer")
        response = client.post(
            "/orders",
            data={
                "items": json.dumps(body["items"]),
                "shippingAddress": json.dumps(body["shippingAddress"]),
                "paymentMethod": "BankTransfer",
            },
            files={"paymentScreenshot": ("proof.png", b"png-bytes", "image/png")},
        )
        assert response.status_code == 400
        assert image_store.deleted == ["payments/1"]
        assert db["order"].count_documents({}) == 0

    def test_coupon_needs_login(self, client, db):
        product_id, option_id = add_product(db)
        add_coupon(db)
        response = client.post("/orders", json=order_body(product_id, option_id, couponCode="SAVE10"))
        assert response.status_code == 401

    def test_customer_coupon_order(self, client, db, customer, notifier):
        product_id, option_id = add_product(db, price=1000)
        add_coupon(db)
        response = client.post(
            "/orders", json=order_body(product_id, option_id, couponCode="save10"), headers=CUSTOMER_AUTH
        )
        assert response.status_code == 201
        assert response.json()["discount"] == 100
        assert notifier.emails[0]["to"] == "customer-token@shop.test"
        assert notifier.whatsapp == []


class TestOrderAdmin:
    @pytest.fixture
    def order_id(self, client, db, customer):
        product_id, option_id = add_product(db, stock=5)
        response = client.post("/orders", json=order_body(product_id, option_id, 2), headers=CUSTOMER_AUTH)
        return response.json()["id"]

    def test_status_requires_admin(self, client, order_id):
        assert client.put(f"/orders/{order_id}/status", json={"status": "Shipped"}).status_code == 401
        response = client.put(f"/orders/{order_id}/status", json={"status": "Shipped"}, headers=CUSTOMER_AUTH)
        assert response.status_code == 403

    def test_ship_needs_tracking_id(self, client, admin, order_id):
        response = client.put(f"/orders/{order_id}/status", json={"status": "Shipped"}, headers=ADMIN_AUTH)
        assert response.status_code == 400
        assert response.json()["detail"] == "Tracking ID is required for shipped orders"

    def test_ship_notifies_customer(self, client, admin, order_id, notifier):
        notifier.emails.clear()
        response = client.put(
            f"/orders/{order_id}/status", json={"status": "shipped", "trackingId": "TRK-42"}, headers=ADMIN_AUTH
        )
        assert response.status_code == 200
        assert response.json()["status"] == "Shipped"
        assert "TRK-42" in notifier.emails[0]["html"]

    def test_invalid_status(self, client, admin, order_id):
        response = client.put(f"/orders/{order_id}/status", json={"status": 7}, headers=ADMIN_AUTH)
        assert response.status_code == 400
        assert response.json()["detail"] == "Status is required and must be a string"

    def test_cancel_restocks(self, client, db, admin, order_id):
        response = client.put(f"/orders/{order_id}/status", json={"status": "Cancelled"}, headers=ADMIN_AUTH)
        assert response.status_code == 200
        assert db["product"].find_one()["stock"] == 5

    def test_verify_payment_decline(self, client, db, admin, order_id):
        response = client.put(
            f"/orders/{order_id}/verify-payment", json={"paymentStatus": "Declined"}, headers=ADMIN_AUTH
        )
        assert response.status_code == 200
        assert response.json()["payment_status"] == "Declined"
        assert db["product"].find_one()["stock"] == 5

    def test_my_orders_and_admin_list(self, client, admin, order_id):
        mine = client.get("/orders/my-orders", headers=CUSTOMER_AUTH).json()
        assert [o["id"] for o in mine] == [order_id]
        listing = client.get("/orders?status=Processing", headers=ADMIN_AUTH).json()
        assert listing["orders"][0]["id"] == order_id
        assert listing["total_pages"] == 1

    def test_get_order(self, client, admin, order_id):
        assert client.get(f"/orders/{order_id}", headers=CUSTOMER_AUTH).status_code == 200
        assert client.get(f"/orders/{ObjectId()}", headers=ADMIN_AUTH).status_code == 404

    def test_sales(self, client, admin, order_id):
        response = client.get("/orders/sales?period=week", headers=ADMIN_AUTH)
        assert response.status_code == 200
        assert response.json()["total_orders"] == 1


class TestPayFast:
    @pytest.fixture
    def order(self, client, db):
        product_id, option_id = add_product(db, price=1000)
        return client.post("/orders", json=order_body(product_id, option_id, method="PayFast")).json()

    def _notify(self, client, config, order, status="COMPLETE"):
        data = {
            "m_payment_id": order["id"],
            "pf_payment_id": "77",
            "payment_status": status,
            "amount_gross": f"{order['total_amount']:.2f}",
        }
        data["signature"] = payfast_signature(data, config.payfast_passphrase)
        return client.post("/orders/notify", data=data)

    def test_order_gets_redirect(self, order):
        assert order["status"] == "Pending"
        assert order["payment_result"]["redirect_url"].startswith("https://sandbox.payfast.test/eng/process?")

    def test_notify_confirms(self, client, config, order, notifier):
        response = self._notify(client, config, order)
        assert response.status_code == 200
        assert response.json()["status"] == "Processing"
        assert any("Order Processing" in e["html"] for e in notifier.emails)

    def test_notify_bad_signature(self, client, order):
        response = client.post(
            "/orders/notify", data={"m_payment_id": order["id"], "payment_status": "COMPLETE", "signature": "x"}
        )
        assert response.status_code == 400

    def test_initiate_renders_form(self, client, config, order, monkeypatch):
        monkeypatch.setattr(GoPayFastClient, "fetch_token", lambda self, basket_id, amount: "tok-1")
        response = client.get(f"/payfast/initiate/{order['id']}")
        assert response.status_code == 200
        assert 'name="TOKEN" value="tok-1"' in response.text
        assert f'name="BASKET_ID" value="{order["id"]}"' in response.text


class TestCoupons:
    def test_admin_crud(self, client, admin):
        expires = (datetime.utcnow() + timedelta(days=3)).isoformat()
        created = client.post(
            "/coupons",
            json={"code": "eid", "discountType": "fixed", "discountValue": 200, "totalCoupons": 10, "expiresAt": expires},
            headers=ADMIN_AUTH,
        )
        assert created.status_code == 201
        assert created.json()["code"] == "EID"

        duplicate = client.post(
            "/coupons",
            json={"code": "EID", "discountType": "fixed", "discountValue": 50, "totalCoupons": 1, "expiresAt": expires},
            headers=ADMIN_AUTH,
        )
        assert duplicate.status_code == 400

        assert [c["code"] for c in client.get("/coupons").json()] == ["EID"]
        updated = client.put("/coupons/eid", json={"discountValue": 250}, headers=ADMIN_AUTH)
        assert updated.json()["discount_value"] == 250
        assert client.delete("/coupons/EID", headers=ADMIN_AUTH).status_code == 200
        assert client.get("/coupons/all", headers=ADMIN_AUTH).json() == []

    def test_validate_prices_cart_server_side(self, client, db, customer):
        product_id, option_id = add_product(db, price=1000, sale=10)
        add_coupon(db)
        response = client.post(
            "/coupons/validate",
            json={"code": "SAVE10", "items": [{"productId": product_id, "priceOptionId": option_id, "quantity": 2}]},
            headers=CUSTOMER_AUTH,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["eligible_subtotal"] == 1800
        assert data["discount"] == 180
        assert db["coupon"].find_one({"code": "SAVE10"})["used_coupons"] == 0

    def test_validate_reports_rule(self, client, db, customer):
        add_coupon(db, expires_at=datetime.utcnow() - timedelta(days=1))
        response = client.post("/coupons/validate", json={"code": "SAVE10", "cartTotal": 500}, headers=CUSTOMER_AUTH)
        assert response.status_code == 400
        assert response.json()["detail"] == "Coupon has expired"

    def test_invalid_body_is_a_400(self, client, admin):
        response = client.post(
            "/coupons",
            json={
                "code": "BIG",
                "discountType": "percentage",
                "discountValue": 150,
                "totalCoupons": 5,
                "expiresAt": (datetime.utcnow() + timedelta(days=3)).isoformat(),
            },
            headers=ADMIN_AUTH,
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "ValidationError"
        assert "Percentage discount cannot exceed 100%" in response.json()["detail"]

    def test_null_expiry_is_rejected(self, client, db, admin):
        add_coupon(db, code="NULLX")
        response = client.put("/coupons/NULLX", json={"expiresAt": None}, headers=ADMIN_AUTH)
        assert response.status_code == 400
        assert response.json()["detail"].startswith("expiresAt")
        listing = client.get("/coupons")
        assert listing.status_code == 200
        assert [c["code"] for c in listing.json()] == ["NULLX"]


class TestSettings:
    def test_defaults_then_update(self, client, admin):
        assert client.get("/settings").json() == {"shipping_fee": 0, "free_shipping_threshold": 2000, "cod_fee": 100}
        response = client.put("/settings", json={"shippingFee": 250}, headers=ADMIN_AUTH)
        assert response.status_code == 200
        assert response.json()["shipping_fee"] == 250
        assert client.get("/settings").json()["cod_fee"] == 100
