import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import PRODUCTS, get_documents, utcnow
from discounts import list_active_discounts
from errors import Conflict, NotFound
from identifiers import ensure_id
from inventory import StockLedger
from orders import OrderService
from schemas import Discount, ProductCreate, ProductUpdate

logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._products = db[PRODUCTS]
        self._clock = clock
        self.ledger = StockLedger(db)

    def create_product(self, payload: ProductCreate) -> Dict[str, Any]:
        now = self._clock()
        doc = payload.model_dump(exclude={"id"})
        doc.update({"_id": ensure_id(self._products, payload.id), "created_at": now, "updated_at": now})
        try:
            self._products.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Product id already in use", details={"id": doc["_id"]})
        return doc

    def get_product(self, product_id: int) -> Dict[str, Any]:
        product = self._products.find_one({"_id": product_id})
        if product is None:
            raise NotFound("Product not found", details={"id": product_id})
        return product

    def list_products(
        self,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> Dict[str, Any]:
        filter_dict = {"is_active": True} if filter_dict is None else filter_dict
        items = get_documents(
            self._db, PRODUCTS, filter_dict, sort=sort or [("created_at", -1)], limit=limit, skip=skip
        )
        return {"items": items, "total": self._products.count_documents(filter_dict)}

    def update_product(self, product_id: int, payload: ProductUpdate) -> Dict[str, Any]:
        update = payload.model_dump(exclude_none=True)
        update["updated_at"] = self._clock()
        if self._products.update_one({"_id": product_id}, {"$set": update}).matched_count == 0:
            raise NotFound("Product not found", details={"id": product_id})
        return self.get_product(product_id)

    def delete_product(self, product_id: int) -> Dict[str, Any]:
        if self._products.delete_one({"_id": product_id}).deleted_count == 0:
            raise NotFound("Product not found", details={"id": product_id})
        cleanup = OrderService(self._db, self._clock).remove_product(product_id)
        return {"deleted": True, "orders": cleanup}

    def restock(self, product_id: int, sku: str, delta: int) -> Dict[str, Any]:
        stock = self.ledger.adjust_variant_stock(product_id, sku, delta)
        logger.info("Stock for %s/%s adjusted by %+d to %d", product_id, sku, delta, stock)
        return {"product_id": product_id, "sku": sku, "stock": stock}

    def active_discounts(self) -> Dict[str, list]:
        return list_active_discounts(self._products.find({}), self._clock())

    def apply_discount(
        self, scope: str, target_id: int, discount: Optional[Discount], variant_skus: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Set (or clear, with ``discount=None``) a discount on a category, product or variants."""
        value = discount.model_dump() if discount is not None else None
        now = self._clock()

        if scope == "category":
            result = self._products.update_many(
                {"category": target_id}, {"$set": {"discount": value, "updated_at": now}}
            )
            return {
                "success": True,
                "message": f"Discount applied to {result.modified_count} product(s) in this category",
            }

        product = self.get_product(target_id)
        if not variant_skus:
            self._products.update_one({"_id": target_id}, {"$set": {"discount": value, "updated_at": now}})
            return {"success": True}

        skus = sorted(set(variant_skus))
        missing = set(skus) - {v.get("sku") for v in product.get("variants") or []}
        if missing:
            raise NotFound("Variant not found for product", details={"skus": sorted(missing)})
        self._products.update_one(
            {"_id": target_id, "variants.sku": {"$in": skus}},
            {"$set": {"variants.$[elem].discount": value, "updated_at": now}},
            array_filters=[{"elem.sku": {"$in": skus}}],
        )
        return {"success": True}
