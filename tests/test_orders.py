"""Order placement, edits and catalog side effects, against the service layer."""
import pytest

from catalog import CatalogService
from database import ORDERS, PRODUCTS, PROMOS
from errors import Conflict, NotFound, OutOfStock, StateError, ValidationError
from promos import PromoService
from schemas import CustomerOrderUpdate, OrderCreate, OrderUpdate, PromoCreate, ShippingCreate
from shipping import ShippingService

from conftest import ADDRESS, stock_of


def place(orders, user_id, *lines, **fields):
    payload = OrderCreate.model_validate({
        "items": [{"product_id": p, "sku": s, "quantity": q} for p, s, q in lines],
        "shipping_address": ADDRESS,
        **fields,
    })
    return orders.create_order(payload, user_id)


def test_place_order(orders, db, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 2))

    assert 100000 <= order["_id"] <= 999999
    assert order["order_status"] == "processing"
    assert order["payment_status"] == "pending"
    assert order["payment_method"] == "COD"
    assert order["subtotal"] == 200.0
    assert order["shipping_fee"] == 0.0
    assert order["total"] == 200.0
    item = order["items"][0]
    assert item["price_at_purchase"] == item["original_price"] == 100.0
    assert item["discount_applied"] is False
    assert item["discount_snapshot"] is None
    assert item["image"] == "a.jpg"
    assert item["name"] == "Linen Shirt"
    assert stock_of(db, 100001, "SKU-A") == 1
    assert db[ORDERS].count_documents({}) == 1


def test_line_image_falls_back_to_thumbnail(orders, customer, product):
    item = place(orders, 200001, (100001, "SKU-B", 1))["items"][0]
    assert item["image"] == "thumb.jpg"
    assert item["price_at_purchase"] == 120.0


def test_second_order_for_last_units_fails(orders, db, customer, product):
    place(orders, 200001, (100001, "SKU-A", 2))
    with pytest.raises(OutOfStock):
        place(orders, 200001, (100001, "SKU-A", 2))
    assert stock_of(db, 100001, "SKU-A") == 1
    assert db[ORDERS].count_documents({}) == 1


def test_failed_reservation_releases_earlier_lines(orders, db, customer, product):
    with pytest.raises(OutOfStock):
        place(orders, 200001, (100001, "SKU-B", 2), (100001, "SKU-A", 5))
    assert stock_of(db, 100001, "SKU-B") == 5
    assert stock_of(db, 100001, "SKU-A") == 3
    assert db[ORDERS].count_documents({}) == 0


def test_unknown_variant_rejects_whole_order(orders, db, customer, product):
    with pytest.raises(NotFound, match="Variant"):
        place(orders, 200001, (100001, "SKU-A", 1), (100001, "SKU-NOPE", 1))
    assert stock_of(db, 100001, "SKU-A") == 3
    assert db[ORDERS].count_documents({}) == 0


def test_inactive_product_rejected(orders, customer, make_product):
    make_product(is_active=False)
    with pytest.raises(NotFound, match="inactive"):
        place(orders, 200001, (100001, "SKU-A", 1))


def test_unknown_user_rejected(orders, product):
    with pytest.raises(NotFound, match="User"):
        place(orders, 299999, (100001, "SKU-A", 1))


def test_supplied_order_id_is_kept_and_duplicates_rejected(orders, db, customer, product):
    assert place(orders, 200001, (100001, "SKU-A", 1), id=555555)["_id"] == 555555
    with pytest.raises(Conflict):
        place(orders, 200001, (100001, "SKU-A", 1), id=555555)
    assert stock_of(db, 100001, "SKU-A") == 2


def test_snapshot_survives_catalog_changes(orders, db, customer, make_product):
    make_product(discount={"type": "percentage", "value": 10, "is_active": True})
    order = place(orders, 200001, (100001, "SKU-A", 1))
    assert order["items"][0]["price_at_purchase"] == 90.0

    db[PRODUCTS].update_one({"_id": 100001}, {"$set": {"base_price": 250.0, "discount": None}})

    item = orders.get_order(order["_id"])["items"][0]
    assert item["price_at_purchase"] == 90.0
    assert item["original_price"] == 100.0
    assert item["discount_applied"] is True
    assert item["discount_snapshot"]["value"] == 10


def test_variant_discount_takes_precedence(orders, db, customer, product):
    db[PRODUCTS].update_one({"_id": 100001}, {"$set": {
        "discount": {"type": "percentage", "value": 10, "is_active": True},
        "variants.0.discount": {"type": "fixed", "value": 30, "is_active": True},
    }})
    item = place(orders, 200001, (100001, "SKU-A", 1))["items"][0]
    assert item["price_at_purchase"] == 70.0
    assert item["discount_snapshot"]["type"] == "fixed"


def test_promo_discount_and_usage(orders, db, clock, customer, product):
    PromoService(db, clock).create_promo(PromoCreate(code=" save10 ", value=10, min_order_amount=150))
    order = place(orders, 200001, (100001, "SKU-A", 2), promo_code="save10")

    assert order["promo_code"] == "SAVE10"
    assert order["discount_total"] == 20.0
    assert order["total"] == 180.0
    assert db[PROMOS].find_one({"code": "SAVE10"})["usage_count"] == 1


def test_promo_below_minimum_rejects_order(orders, db, clock, customer, product):
    PromoService(db, clock).create_promo(PromoCreate(code="SAVE10", value=10, min_order_amount=150))
    with pytest.raises(ValidationError, match="minimum order"):
        place(orders, 200001, (100001, "SKU-A", 1), promo_code="SAVE10")
    assert stock_of(db, 100001, "SKU-A") == 3
    assert db[PROMOS].find_one({"code": "SAVE10"})["usage_count"] == 0


def test_shipping_fee_by_governorate(orders, db, clock, customer, product):
    ShippingService(db, clock).create_entry(ShippingCreate(id="Cairo", label="Cairo", price=50))
    order = place(orders, 200001, (100001, "SKU-A", 1))
    assert order["shipping_fee"] == 50.0
    assert order["total"] == 150.0


def test_customer_edit_keeps_snapshots_and_prices_new_lines(orders, db, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 1))
    db[PRODUCTS].update_one({"_id": 100001}, {"$set": {"base_price": 200.0}})

    updated = orders.update_order_for_customer(order["_id"], 200001, CustomerOrderUpdate.model_validate({
        "items": [
            {"product_id": 100001, "sku": "SKU-A", "quantity": 2},
            {"product_id": 100001, "sku": "SKU-B", "quantity": 1},
        ],
    }))

    prices = {it["sku"]: (it["price_at_purchase"], it["quantity"]) for it in updated["items"]}
    assert prices == {"SKU-A": (100.0, 2), "SKU-B": (220.0, 1)}
    assert updated["subtotal"] == 420.0
    assert orders.get_order(order["_id"])["total"] == 420.0


def test_customer_edit_of_shipped_order_is_rejected(orders, db, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 1))
    db[ORDERS].update_one({"_id": order["_id"]}, {"$set": {"order_status": "shipped"}})
    before = db[ORDERS].find_one({"_id": order["_id"]})

    with pytest.raises(StateError):
        orders.update_order_for_customer(order["_id"], 200001, CustomerOrderUpdate.model_validate({
            "items": [{"product_id": 100001, "sku": "SKU-A", "quantity": 3}],
        }))
    assert db[ORDERS].find_one({"_id": order["_id"]}) == before


def test_customer_cannot_edit_someone_elses_order(orders, customer, make_user, product):
    make_user(200003)
    order = place(orders, 200001, (100001, "SKU-A", 1))
    with pytest.raises(NotFound):
        orders.update_order_for_customer(order["_id"], 200003, CustomerOrderUpdate())


def test_customer_cancel(orders, db, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 2))
    assert orders.cancel_order_for_customer(order["_id"], 200001)["order_status"] == "cancelled"
    # made-to-order stock is not put back
    assert stock_of(db, 100001, "SKU-A") == 1
    with pytest.raises(StateError):
        orders.cancel_order_for_customer(order["_id"], 200001)


def test_admin_update_skips_lifecycle_checks(orders, db, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 1))
    db[ORDERS].update_one({"_id": order["_id"]}, {"$set": {"order_status": "delivered"}})

    updated = orders.update_order(order["_id"], OrderUpdate(order_status="processing", tracking_number="TRK-1"))
    assert updated["order_status"] == "processing"
    assert updated["tracking_number"] == "TRK-1"


def test_admin_item_update_reprices(orders, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 1))
    updated = orders.update_order(order["_id"], OrderUpdate.model_validate({
        "items": [{"product_id": 100001, "sku": "SKU-A", "quantity": 3, "price_at_purchase": 80}],
    }))
    assert updated["items"][0]["price_at_purchase"] == 80
    assert updated["subtotal"] == 240.0
    assert updated["total"] == 240.0

    with pytest.raises(ValidationError):
        orders.update_order(order["_id"], OrderUpdate(items=[]))


def test_empty_admin_update_is_a_no_op(orders, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 1))
    assert orders.update_order(order["_id"], OrderUpdate())["_id"] == order["_id"]
    assert "updated_at" not in orders.get_order(order["_id"])


def test_product_deletion_updates_processing_orders(orders, db, clock, customer, product, make_product):
    make_product(100002, slug="other", base_price=50.0)
    only_deleted = place(orders, 200001, (100001, "SKU-A", 1))
    mixed = place(orders, 200001, (100001, "SKU-A", 1), (100002, "SKU-B", 1))
    shipped = place(orders, 200001, (100001, "SKU-A", 1))
    db[ORDERS].update_one({"_id": shipped["_id"]}, {"$set": {"order_status": "shipped"}})

    result = CatalogService(db, clock).delete_product(100001)

    assert result == {"deleted": True, "orders": {"updated": 1, "deleted": 1}}
    assert db[ORDERS].find_one({"_id": only_deleted["_id"]}) is None
    remaining = db[ORDERS].find_one({"_id": mixed["_id"]})
    assert [it["product_id"] for it in remaining["items"]] == [100002]
    assert remaining["subtotal"] == remaining["total"] == 70.0
    assert len(db[ORDERS].find_one({"_id": shipped["_id"]})["items"]) == 1


def test_delete_user_orders_keeps_paid_deliveries(orders, db, customer, product):
    kept = place(orders, 200001, (100001, "SKU-A", 1))
    place(orders, 200001, (100001, "SKU-A", 1))
    db[ORDERS].update_one({"_id": kept["_id"]}, {"$set": {"order_status": "delivered", "payment_status": "paid"}})

    assert orders.delete_user_orders(200001) == 1
    assert [o["_id"] for o in db[ORDERS].find()] == [kept["_id"]]


def test_list_orders_newest_first(orders, clock, customer, product):
    first = place(orders, 200001, (100001, "SKU-A", 1))
    clock.advance(minutes=5)
    second = place(orders, 200001, (100001, "SKU-A", 1))

    result = orders.list_orders({"user_id": 200001})
    assert result["total"] == 2
    assert [o["_id"] for o in result["items"]] == [second["_id"], first["_id"]]


def test_edited_promo_order_total_is_subtotal_plus_shipping(orders, db, clock, customer, product):
    PromoService(db, clock).create_promo(PromoCreate(code="SAVE10", value=10))
    ShippingService(db, clock).create_entry(ShippingCreate(id="cairo", price=50))
    order = place(orders, 200001, (100001, "SKU-A", 1), promo_code="SAVE10")
    assert (order["subtotal"], order["discount_total"], order["total"]) == (100.0, 10.0, 140.0)

    updated = orders.update_order_for_customer(order["_id"], 200001, CustomerOrderUpdate.model_validate({
        "items": [{"product_id": 100001, "sku": "SKU-A", "quantity": 2}],
    }))
    assert updated["subtotal"] == 200.0
    assert updated["total"] == updated["subtotal"] + updated["shipping_fee"] == 250.0

    admin_updated = orders.update_order(order["_id"], OrderUpdate.model_validate({
        "items": [{"product_id": 100001, "sku": "SKU-A", "quantity": 1}],
    }))
    assert admin_updated["total"] == 150.0


def test_customer_edit_ignores_price_overrides(orders, customer, product):
    order = place(orders, 200001, (100001, "SKU-A", 1))
    updated = orders.update_order_for_customer(order["_id"], 200001, CustomerOrderUpdate.model_validate({
        "items": [
            {"product_id": 100001, "sku": "SKU-A", "quantity": 1, "price_at_purchase": 0},
            {"product_id": 100001, "sku": "SKU-B", "quantity": 1, "price_at_purchase": 0},
        ],
    }))
    prices = {it["sku"]: it["price_at_purchase"] for it in updated["items"]}
    assert prices == {"SKU-A": 100.0, "SKU-B": 120.0}
    assert updated["total"] == 220.0
