"""
Shared fixtures: an in-memory mongomock database wired into the app in
place of the real MongoDB handle.
"""

import mongomock
import pytest
from fastapi.testclient import TestClient

import carts
import checkout
import database
from main import app

BUYER = "buyer-1"
OTHER_BUYER = "buyer-2"
SELLER = "farmer-1"
OTHER_SELLER = "farmer-2"

ADDRESS = {
    "full_name": "Ada Obi",
    "address": "12 Market Road",
    "city": "Ibadan",
    "zip_code": "200001",
    "phone": "08030000000",
}


def headers(user_id, role):
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    test_db = client["market_test"]
    database.ensure_indexes(test_db)
    return test_db


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def factory(name="Apple", price=1.0, stock=10, seller_id=SELLER, **extra):
        doc = {
            "seller_id": seller_id,
            "name": name,
            "category": "Fruits",
            "price": price,
            "stock": stock,
            "unit": "kg",
            "is_active": True,
            "approval_status": "Approved",
            "sales_count": 0,
        }
        doc.update(extra)
        return db["product"].insert_one(doc).inserted_id
    return factory


@pytest.fixture
def place_order(db):
    """Add (product_id, quantity) pairs to the buyer's cart and check it out."""
    def factory(lines, buyer_id=BUYER):
        cart = None
        for product_id, quantity in lines:
            cart = carts.add_item(db, buyer_id, product_id, quantity)
        placed = checkout.checkout(db, buyer_id, cart["_id"], ADDRESS)
        return db["order"].find_one({"order_number": placed["order_number"]})
    return factory


def stock_of(db, product_id):
    return db["product"].find_one({"_id": product_id})["stock"]
