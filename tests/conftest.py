import uuid

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from schemas import Product, User


@pytest.fixture
def mock_db(monkeypatch):
    test_db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def client(mock_db):
    main.app.state.rate_limiter.reset()
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(mock_db):
    def _make(role="customer", email=None, password="secret123"):
        email = email or f"{role}-{uuid.uuid4().hex[:8]}@storefront.io"
        user = User(
            email=email,
            full_name="Test User",
            password_hash=main.hash_password(password),
            role=role,
        )
        user_id = database.create_document("user", user)
        token = main.create_token({"id": user_id, "email": email, "role": role})
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def admin_headers(make_user):
    return make_user(role="admin")[1]


@pytest.fixture
def make_product(mock_db):
    def _make(**overrides):
        fields = {
            "name": "Canvas Tote",
            "description": "Heavy cotton tote bag",
            "price": 20.0,
            "stock": 10,
            "category": "Bags",
            "images": ["https://cdn.storefront.io/tote.jpg"],
        }
        fields.update(overrides)
        return database.create_document("product", Product(**fields))

    return _make


@pytest.fixture
def address():
    return {
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
    }
