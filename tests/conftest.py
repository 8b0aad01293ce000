from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import PRODUCTS, USERS
from main import create_app
from orders import OrderService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

ADDRESS = {"street": "12 Nile St", "city": "Maadi", "governorate": "Cairo"}


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def client(db, clock):
    return TestClient(create_app(db=db, clock=clock))


@pytest.fixture
def orders(db, clock):
    return OrderService(db, clock)


@pytest.fixture
def make_user(db):
    def _make(user_id, role="customer", phone="01012345678", token=None):
        token = token or f"token-{user_id}"
        db[USERS].insert_one({
            "_id": user_id,
            "name": f"User {user_id}",
            "email": f"user{user_id}@example.com",
            "phone": phone,
            "role": role,
            "cart_items": [],
            "token": token,
            "token_expires": NOW + timedelta(days=7),
        })
        return {"id": user_id, "headers": {"Authorization": f"Bearer {token}"}}

    return _make


@pytest.fixture
def customer(make_user):
    return make_user(200001)


@pytest.fixture
def admin(make_user):
    return make_user(200002, role="admin")


@pytest.fixture
def make_product(db):
    def _make(product_id=100001, **fields):
        doc = {
            "_id": product_id,
            "name": "Linen Shirt",
            "slug": "linen-shirt",
            "base_price": 100.0,
            "category": 1,
            "thumbnail": "thumb.jpg",
            "is_active": True,
            "discount": None,
            "variants": [
                {"sku": "SKU-A", "color": "white", "size": "M", "price_modifier": 0, "stock": 3,
                 "images": ["a.jpg"], "discount": None},
                {"sku": "SKU-B", "color": "blue", "size": "L", "price_modifier": 20, "stock": 5,
                 "images": [], "discount": None},
            ],
            "created_at": NOW,
        }
        doc.update(fields)
        db[PRODUCTS].insert_one(doc)
        return doc

    return _make


@pytest.fixture
def product(make_product):
    return make_product()


def stock_of(db, product_id, sku):
    product = db[PRODUCTS].find_one({"_id": product_id})
    return next(v["stock"] for v in product["variants"] if v["sku"] == sku)
