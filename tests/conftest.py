import hashlib

import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
from config import Settings, get_settings
from database import ensure_indexes, get_db
from main import app
from schemas import Category, OrderRequest, Product, VariantIn

SERVER_KEY = "SB-Mid-server-test-key"
ADMIN_TOKEN = "admin-test-token"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(
        free_shipping_threshold=250000,
        flat_shipping_fee=15000,
        midtrans_server_key=SERVER_KEY,
        admin_token=ADMIN_TOKEN,
    )


@pytest.fixture
def client(db, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def category(db):
    return catalog.create_category(db, Category(name="Dresses", slug="dresses"))


@pytest.fixture
def make_product(db, category):
    created = []

    def _make(**overrides):
        n = len(created) + 1
        data = {
            "name": f"Kebaya {n}",
            "slug": f"kebaya-{n}",
            "price": 100000,
            "stock": 10,
            "category_id": category["id"],
        }
        data.update(overrides)
        product = catalog.create_product(db, Product(**data))
        created.append(product)
        return product

    return _make


@pytest.fixture
def make_variant(db):
    def _make(product, **overrides):
        data = {"size": "M", "color": "Black", "stock": 5, "additional_price": 0}
        data.update(overrides)
        return catalog.create_variant(db, product["id"], VariantIn(**data))

    return _make


@pytest.fixture
def order_body():
    """Builds a camelCase checkout body for the given cart lines."""
    def _build(items, **overrides):
        body = {
            "customerInfo": {"name": "Siti Rahma", "email": "siti@example.com", "phone": "081234567890"},
            "shippingAddress": {
                "name": "Siti Rahma",
                "phone": "081234567890",
                "address": "Jl. Merdeka No. 10, Menteng",
                "city": "Jakarta",
                "province": "DKI Jakarta",
                "postalCode": "10110",
            },
            "paymentMethod": {"method": "bank_transfer"},
            "items": items,
        }
        body.update(overrides)
        return body

    return _build


@pytest.fixture
def order_request(order_body):
    def _build(items, **overrides):
        return OrderRequest(**order_body(items, **overrides))

    return _build


def sign(order_id, status_code, gross_amount, key=SERVER_KEY):
    return hashlib.sha512((order_id + status_code + gross_amount + key).encode()).hexdigest()


@pytest.fixture
def notification():
    """Builds a signed Midtrans notification payload."""
    def _build(order_number, transaction_status="settlement", gross_amount="115000.00", **overrides):
        status_code = overrides.pop("status_code", "200")
        payload = {
            "transaction_time": "2026-10-19 10:00:00",
            "transaction_status": transaction_status,
            "transaction_id": overrides.pop("transaction_id", "9aed5972-5b6a-401e-894b-a32c91ed1a3a"),
            "status_message": "midtrans payment notification",
            "status_code": status_code,
            "merchant_id": "G141532850",
            "gross_amount": gross_amount,
            "fraud_status": "accept",
            "currency": "IDR",
            "order_id": order_number,
            "payment_type": "bank_transfer",
            "signature_key": sign(order_number, status_code, gross_amount),
        }
        payload.update(overrides)
        return payload

    return _build
