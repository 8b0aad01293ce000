import logging
from typing import Any, Dict, Iterable, List, Tuple

from pymongo.database import Database

from database import PRODUCTS, USERS, utcnow
from errors import NotFound

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("image", "color", "size", "price_at_purchase")


def _key(item: Dict[str, Any]) -> Tuple[str, str]:
    return str(item.get("product_id")), str(item.get("sku"))


def merge_carts(server_items: List[Dict[str, Any]], local_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge a locally held cart into the saved one.

    Quantities for the same (product, sku) add up; for metadata the local
    copy wins wherever it has a value. Identical carts are not merged, so
    logging in twice never doubles quantities.
    """
    if server_items == local_items:
        return [dict(it) for it in server_items]

    merged: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for item in server_items:
        merged[_key(item)] = dict(item)
    for item in local_items:
        key = _key(item)
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(item)
            continue
        existing["quantity"] = (existing.get("quantity") or 0) + (item.get("quantity") or 0)
        for field in METADATA_FIELDS:
            if item.get(field) is not None:
                existing[field] = item[field]
    return list(merged.values())


def revalidate_cart(
    items: Iterable[Dict[str, Any]], products: Dict[int, Dict[str, Any]]
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Check cart lines against live products.

    Lines whose product is gone or inactive, or whose variant no longer
    exists, are dropped. Quantities above the variant's stock are lowered to
    it, and lines with no stock left are dropped. Returns (kept, changes).
    """
    kept, changes = [], []
    for item in items:
        product = products.get(item.get("product_id"))
        variant = None
        if product is not None and product.get("is_active", True):
            variant = next((v for v in product.get("variants") or [] if v.get("sku") == item.get("sku")), None)
        if variant is None:
            changes.append({"product_id": item.get("product_id"), "sku": item.get("sku"), "reason": "unavailable"})
            continue
        stock = int(variant.get("stock") or 0)
        if stock <= 0:
            changes.append({"product_id": item["product_id"], "sku": item["sku"], "reason": "out_of_stock"})
            continue
        if (item.get("quantity") or 0) > stock:
            changes.append({
                "product_id": item["product_id"],
                "sku": item["sku"],
                "reason": "quantity_reduced",
                "quantity": stock,
            })
            item = {**item, "quantity": stock}
        kept.append(item)
    return kept, changes


class CartService:
    def __init__(self, db: Database):
        self._users = db[USERS]
        self._products = db[PRODUCTS]

    def _cart(self, user_id: int) -> List[Dict[str, Any]]:
        user = self._users.find_one({"_id": user_id}, {"cart_items": 1})
        if user is None:
            raise NotFound("User not found", details={"id": user_id})
        return list(user.get("cart_items") or [])

    def _save(self, user_id: int, items: List[Dict[str, Any]]):
        self._users.update_one({"_id": user_id}, {"$set": {"cart_items": items, "updated_at": utcnow()}})

    def merge(self, user_id: int, local_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        server_items = self._cart(user_id)
        merged = merge_carts(server_items, local_items)
        if merged != server_items:
            try:
                self._save(user_id, merged)
            except Exception:
                # the shopper keeps the merged cart; the next cart write persists it
                logger.warning("Could not persist merged cart for user %s", user_id, exc_info=True)
        return merged

    def validate(self, user_id: int) -> Dict[str, Any]:
        items = self._cart(user_id)
        ids = list({it.get("product_id") for it in items})
        products = {p["_id"]: p for p in self._products.find({"_id": {"$in": ids}})} if ids else {}
        kept, changes = revalidate_cart(items, products)
        if changes:
            self._save(user_id, kept)
        return {"items": kept, "changes": changes}
