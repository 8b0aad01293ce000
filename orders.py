import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import lifecycle
from database import ORDERS, PRODUCTS, USERS, get_documents, utcnow
from discounts import price_snapshot
from errors import Conflict, NotFound, ValidationError
from identifiers import ensure_id
from inventory import Reserved, StockLedger
from promos import PromoService
from schemas import CustomerOrderUpdate, OrderCreate, OrderItem, OrderItemIn, OrderUpdate
from shipping import ShippingService

logger = logging.getLogger(__name__)

ADMIN_FIELDS = ("payment_status", "order_status", "tracking_number", "items", "shipping_address")


def find_variant(product: Dict[str, Any], sku: str) -> Optional[Dict[str, Any]]:
    for variant in product.get("variants") or []:
        if variant.get("sku") == sku:
            return variant
    return None


def build_item(product: Dict[str, Any], variant: Dict[str, Any], quantity: int, now: datetime) -> Dict[str, Any]:
    original, price, snapshot, applied = price_snapshot(product, variant, now)
    images = variant.get("images") or []
    item = OrderItem(
        product_id=product["_id"],
        sku=variant["sku"],
        quantity=quantity,
        price_at_purchase=price,
        original_price=original,
        discount_snapshot=snapshot,
        discount_applied=applied,
        name=product.get("name"),
        image=images[0] if images else product.get("thumbnail"),
    )
    return item.model_dump()


def compute_subtotal(items: Sequence[Dict[str, Any]]) -> float:
    return round(sum(it["price_at_purchase"] * it["quantity"] for it in items), 2)


def compute_total(subtotal: float, shipping_fee: float, discount_total: float) -> float:
    return round(subtotal + shipping_fee - min(discount_total, subtotal), 2)


class OrderService:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._orders = db[ORDERS]
        self._products = db[PRODUCTS]
        self._users = db[USERS]
        self._clock = clock
        self.ledger = StockLedger(db)
        self.promos = PromoService(db, clock)
        self.shipping = ShippingService(db, clock)

    # ---------- placement ----------

    def _load_line(self, product_id: int, sku: str, active_only: bool = True):
        query = {"_id": product_id, "is_active": True} if active_only else {"_id": product_id}
        product = self._products.find_one(query)
        if product is None:
            raise NotFound(f"Product {product_id} not found or inactive", details={"product_id": product_id})
        variant = find_variant(product, sku)
        if variant is None:
            raise NotFound("Variant not found for product", details={"product_id": product_id, "sku": sku})
        return product, variant

    def create_order(self, payload: OrderCreate, user_id: int) -> Dict[str, Any]:
        now = self._clock()
        order_id = ensure_id(self._orders, payload.id)

        if self._users.find_one({"_id": user_id}, {"_id": 1}) is None:
            raise NotFound("User not found for order", details={"user_id": user_id})

        # price every line before any stock moves
        items = []
        for line in payload.items:
            product, variant = self._load_line(line.product_id, line.sku)
            items.append(build_item(product, variant, line.quantity, now))

        subtotal = compute_subtotal(items)
        discount_total = 0.0
        promo_code = None
        if payload.promo_code:
            promo = self.promos.check_promo(payload.promo_code, amount=subtotal)
            promo_code = promo["code"]
            discount_total = self.promos.discount_amount(promo, subtotal)

        address = payload.shipping_address.model_dump()
        shipping_fee = self.shipping.fee_for(address)

        reservation = self.ledger.reservation()
        reservation.reserve_all(Reserved(it["product_id"], it["sku"], it["quantity"]) for it in items)

        doc = {
            "_id": order_id,
            "user_id": user_id,
            "items": items,
            "shipping_address": address,
            "payment_method": payload.payment_method,
            "payment_status": "pending",
            "order_status": lifecycle.PROCESSING,
            "subtotal": subtotal,
            "shipping_fee": shipping_fee,
            "discount_total": discount_total,
            "promo_code": promo_code,
            "total": compute_total(subtotal, shipping_fee, discount_total),
            "tracking_number": None,
            "placed_at": now,
        }
        try:
            self._orders.insert_one(doc)
        except DuplicateKeyError:
            reservation.rollback()
            raise Conflict("Order id already in use", details={"id": order_id})
        except Exception:
            reservation.rollback()
            raise

        if promo_code:
            self.promos.record_usage(promo_code)
        logger.info("Order %s placed by user %s (%d items, total %.2f)", order_id, user_id, len(items), doc["total"])
        return doc

    # ---------- reads ----------

    def get_order(self, order_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": order_id}
        if user_id is not None:
            query["user_id"] = user_id
        order = self._orders.find_one(query)
        if order is None:
            raise NotFound("Order not found", details={"id": order_id})
        return order

    def list_orders(
        self,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> Dict[str, Any]:
        filter_dict = filter_dict or {}
        items = get_documents(
            self._db, ORDERS, filter_dict, sort=sort or [("placed_at", -1)], limit=limit, skip=skip
        )
        return {"items": items, "total": self._orders.count_documents(filter_dict)}

    # ---------- edits ----------

    def reprice_items(self, existing: Sequence[Dict[str, Any]], incoming: Sequence[OrderItemIn]) -> List[Dict[str, Any]]:
        """Keep the frozen snapshot of lines already on the order; price new lines from the catalog.

        Only admin payloads (``OrderItemUpdate``) carry price and name overrides.
        """
        now = self._clock()
        by_key = {(it["product_id"], it["sku"]): it for it in existing}
        items = []
        for line in incoming:
            overrides = line.model_dump(exclude_none=True)
            matching = by_key.get((line.product_id, line.sku))
            if matching is not None and matching.get("original_price") is not None:
                items.append({**matching, **overrides})
                continue
            product, variant = self._load_line(line.product_id, line.sku, active_only=False)
            item = build_item(product, variant, line.quantity, now)
            if overrides.get("price_at_purchase") is not None:
                item["price_at_purchase"] = overrides["price_at_purchase"]
            if overrides.get("name") and not item["name"]:
                item["name"] = overrides["name"]
            items.append(item)
        return items

    def _totals(self, order: Dict[str, Any], items: Sequence[Dict[str, Any]]) -> Dict[str, float]:
        subtotal = compute_subtotal(items)
        return {
            "subtotal": subtotal,
            "total": round(subtotal + (order.get("shipping_fee") or 0), 2),
        }

    def update_order(self, order_id: int, updates: OrderUpdate) -> Dict[str, Any]:
        """Admin update. Any enum status is accepted; no lifecycle checks apply here."""
        existing = self.get_order(order_id)
        fields = updates.model_dump(exclude_none=True, include=set(ADMIN_FIELDS))
        if not fields:
            return existing

        if updates.items is not None:
            if not updates.items:
                raise ValidationError("Order must contain at least one item")
            fields["items"] = self.reprice_items(existing.get("items") or [], updates.items)
            fields.update(self._totals(existing, fields["items"]))

        fields["updated_at"] = self._clock()
        self._orders.update_one({"_id": order_id}, {"$set": fields})
        logger.info("Order %s updated by admin: %s", order_id, sorted(fields))
        return self.get_order(order_id)

    def update_order_for_customer(self, order_id: int, user_id: int, updates: CustomerOrderUpdate) -> Dict[str, Any]:
        existing = self.get_order(order_id, user_id=user_id)
        current = existing.get("order_status")
        now = self._clock()

        if updates.order_status is not None:
            lifecycle.ensure_return_transition(
                current, updates.order_status, lifecycle.return_reference(existing), now
            )
            fields = {"order_status": updates.order_status, "updated_at": now}
            self._orders.update_one({"_id": order_id, "user_id": user_id}, {"$set": fields})
            return {**existing, **fields}

        lifecycle.ensure_customer_editable(current)

        fields = {"updated_at": now}
        items = existing.get("items") or []
        if updates.items:
            items = self.reprice_items(items, updates.items)
            fields["items"] = items
        if updates.shipping_address is not None:
            fields["shipping_address"] = updates.shipping_address.model_dump()
        if not items:
            raise ValidationError("Order must contain at least one item")

        fields.update(self._totals(existing, items))
        self._orders.update_one({"_id": order_id, "user_id": user_id}, {"$set": fields})
        return {**existing, **fields}

    def cancel_order_for_customer(self, order_id: int, user_id: int) -> Dict[str, Any]:
        existing = self.get_order(order_id, user_id=user_id)
        lifecycle.ensure_customer_can_cancel(existing.get("order_status"))
        fields = {"order_status": lifecycle.CANCELLED, "updated_at": self._clock()}
        self._orders.update_one({"_id": order_id, "user_id": user_id}, {"$set": fields})
        logger.info("Order %s cancelled by customer %s", order_id, user_id)
        return {**existing, **fields}

    def delete_order(self, order_id: int) -> Dict[str, Any]:
        if self._orders.delete_one({"_id": order_id}).deleted_count == 0:
            raise NotFound("Order not found", details={"id": order_id})
        return {"deleted": True}

    # ---------- catalog side effects ----------

    def remove_product(self, product_id: int) -> Dict[str, int]:
        """Drop a deleted product from every processing order.

        Orders left with no items are deleted; the rest get fresh totals.
        """
        updated = deleted = 0
        affected = list(self._orders.find({"order_status": lifecycle.PROCESSING, "items.product_id": product_id}))
        for order in affected:
            remaining = [it for it in order["items"] if it["product_id"] != product_id]
            if not remaining:
                self._orders.delete_one({"_id": order["_id"]})
                deleted += 1
                continue
            fields = {"items": remaining, "updated_at": self._clock(), **self._totals(order, remaining)}
            self._orders.update_one({"_id": order["_id"]}, {"$set": fields})
            updated += 1
        if affected:
            logger.info(
                "Product %s removed from processing orders: %d updated, %d deleted", product_id, updated, deleted
            )
        return {"updated": updated, "deleted": deleted}

    def delete_user_orders(self, user_id: int) -> int:
        """Remove a user's orders except the ones delivered and paid."""
        result = self._orders.delete_many({
            "user_id": user_id,
            "$nor": [{"order_status": lifecycle.DELIVERED, "payment_status": "paid"}],
        })
        return result.deleted_count
