import pytest

from carts import CartService, merge_carts, revalidate_cart
from database import USERS
from errors import NotFound


def line(sku, quantity=1, product_id=100001, **fields):
    return {"product_id": product_id, "sku": sku, "quantity": quantity, **fields}


def test_identical_carts_are_not_doubled():
    cart = [line("SKU-A", 2)]
    assert merge_carts(cart, [line("SKU-A", 2)]) == cart


def test_merge_adds_quantities_and_prefers_local_metadata():
    server = [line("SKU-A", 1, image="old.jpg", color="white")]
    local = [line("SKU-A", 2, image="new.jpg"), line("SKU-B", 1)]
    merged = merge_carts(server, local)
    assert merged == [
        line("SKU-A", 3, image="new.jpg", color="white"),
        line("SKU-B", 1),
    ]


def test_merge_into_empty_cart():
    assert merge_carts([], [line("SKU-A")]) == [line("SKU-A")]


def test_revalidate_drops_and_clamps():
    products = {
        100001: {"_id": 100001, "is_active": True, "variants": [
            {"sku": "SKU-A", "stock": 2},
            {"sku": "SKU-B", "stock": 0},
        ]},
        100002: {"_id": 100002, "is_active": False, "variants": [{"sku": "SKU-A", "stock": 9}]},
    }
    items = [
        line("SKU-A", 5),
        line("SKU-B", 1),
        line("SKU-GONE", 1),
        line("SKU-A", 1, product_id=100002),
        line("SKU-A", 1, product_id=100003),
    ]
    kept, changes = revalidate_cart(items, products)

    assert kept == [line("SKU-A", 2)]
    assert [(c["product_id"], c["sku"], c["reason"]) for c in changes] == [
        (100001, "SKU-A", "quantity_reduced"),
        (100001, "SKU-B", "out_of_stock"),
        (100001, "SKU-GONE", "unavailable"),
        (100002, "SKU-A", "unavailable"),
        (100003, "SKU-A", "unavailable"),
    ]
    assert changes[0]["quantity"] == 2


def test_service_merge_persists_cart(db, customer):
    db[USERS].update_one({"_id": 200001}, {"$set": {"cart_items": [line("SKU-A", 1)]}})
    merged = CartService(db).merge(200001, [line("SKU-A", 1), line("SKU-B", 2)])
    assert merged == [line("SKU-A", 2), line("SKU-B", 2)]
    assert db[USERS].find_one({"_id": 200001})["cart_items"] == merged


def test_service_validate_saves_cleaned_cart(db, customer, product):
    db[USERS].update_one({"_id": 200001}, {"$set": {"cart_items": [line("SKU-A", 10), line("SKU-X", 1)]}})
    result = CartService(db).validate(200001)
    assert result["items"] == [line("SKU-A", 3)]
    assert len(result["changes"]) == 2
    assert db[USERS].find_one({"_id": 200001})["cart_items"] == [line("SKU-A", 3)]


def test_unknown_user_cart(db):
    with pytest.raises(NotFound):
        CartService(db).merge(299999, [])
