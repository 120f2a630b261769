"""Pytest fixtures for the storefront tests."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from config import AppConfig, get_config
from database import get_db
from notifications import Notifier
from schemas import Image


class RecordingNotifier(Notifier):
    """Notifier that records messages instead of calling Resend/WhatsApp."""

    def __init__(self, config: AppConfig):
        super().__init__(config)
        self.emails: List[Dict[str, Any]] = []
        self.whatsapp: List[Dict[str, Any]] = []

    def send_email(self, to, subject, html):
        self.emails.append({"to": to, "subject": subject, "html": html})

    def send_whatsapp(self, phone, template, params):
        self.whatsapp.append({"to": phone, "template": template, "params": params})


class MemoryImageStore:
    def __init__(self):
        self.saved: List[Dict[str, Any]] = []
        self.deleted: List[str] = []

    def save(self, filename, stream, folder="payments"):
        public_id = f"{folder}/{len(self.saved) + 1}"
        self.saved.append({"public_id": public_id, "filename": filename, "data": stream.read()})
        return Image(public_id=public_id, url=f"https://img.test/{public_id}")

    def delete(self, image):
        self.deleted.append(image.public_id)


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def config():
    return AppConfig(
        payfast_url="https://sandbox.payfast.test/eng/process",
        payfast_merchant_id="10000100",
        payfast_merchant_key="46f0cd694581a",
        payfast_passphrase="jt7NOE43FZPn",
        payfast_return_url="https://shop.test/return",
        payfast_cancel_url="https://shop.test/cancel",
        payfast_notify_url="https://api.shop.test/orders/notify",
    )


@pytest.fixture
def notifier(config):
    return RecordingNotifier(config)


@pytest.fixture
def image_store():
    return MemoryImageStore()


def add_product(
    db,
    name: str = "Basmati Rice",
    price: float = 1000,
    stock: int = 10,
    sale: Optional[float] = None,
    sale_price: Optional[float] = None,
    option_type: str = "packet",
    weight: float = 500,
):
    """Insert a product with a single price option; returns (product_id, option_id)."""
    option_id = ObjectId()
    result = db["product"].insert_one(
        {
            "name": name,
            "description": "",
            "categories": ["grocery"],
            "stock": stock,
            "images": [{"public_id": "products/1", "url": "https://img.test/products/1"}],
            "price_options": [
                {"_id": option_id, "type": option_type, "weight": weight, "price": price, "sale_price": sale_price}
            ],
            "sale": sale,
            "created_at": datetime.utcnow(),
        }
    )
    return str(result.inserted_id), str(option_id)


def add_coupon(db, code: str = "SAVE10", **overrides):
    doc = {
        "code": code,
        "discount_type": "percentage",
        "discount_value": 10,
        "min_purchase": 0,
        "max_purchase": None,
        "total_coupons": 100,
        "used_coupons": 0,
        "max_uses_per_user": 1,
        "eligible_users": [],
        "eligible_products": [],
        "used_by": {},
        "start_at": datetime.utcnow() - timedelta(days=1),
        "expires_at": datetime.utcnow() + timedelta(days=30),
        "is_active": True,
    }
    doc.update(overrides)
    db["coupon"].insert_one(doc)
    return db["coupon"].find_one({"code": code})


def add_user(db, token: str, role: str = "user", **overrides):
    doc = {
        "name": "Ayesha Khan",
        "email": f"{token}@shop.test",
        "phone": "+923001234567",
        "role": role,
        "verification_method": "email",
        "api_token": token,
        "is_active": True,
    }
    doc.update(overrides)
    db["user"].insert_one(doc)
    return db["user"].find_one({"api_token": token})


def address(**overrides):
    data = {
        "full_name": "Ayesha Khan",
        "address": "12 Canal Road",
        "city": "Lahore",
        "postal_code": "54000",
        "country": "Pakistan",
        "email": "ayesha@shop.test",
        "phone": "+923001234567",
    }
    data.update(overrides)
    return data


@pytest.fixture
def customer(db):
    return add_user(db, "customer-token")


@pytest.fixture
def admin(db):
    return add_user(db, "admin-token", role="admin", name="Store Admin")


@pytest.fixture
def client(db, config, notifier, image_store):
    from main import app, get_image_store, get_notifier

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_image_store] = lambda: image_store
    yield TestClient(app)
    app.dependency_overrides.clear()


CUSTOMER_AUTH = {"Authorization": "Bearer customer-token"}
ADMIN_AUTH = {"Authorization": "Bearer admin-token"}
