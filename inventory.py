"""Per-variant stock. Decrements are single conditional writes; rollback is compensating increments."""
import logging
from typing import Iterable, List, NamedTuple

from pymongo.database import Database

from database import PRODUCTS, utcnow
from errors import NotFound, OutOfStock, ValidationError

logger = logging.getLogger(__name__)


class Reserved(NamedTuple):
    product_id: int
    sku: str
    qty: int


class StockLedger:
    def __init__(self, db: Database):
        self._products = db[PRODUCTS]

    def adjust_variant_stock(self, product_id: int, sku: str, delta: int) -> int:
        """Apply ``delta`` to a variant's stock and return the new level.

        Negative deltas only apply to active products and never take stock
        below zero. Positive deltas always apply, so a rollback can restore
        stock even if the product was deactivated meanwhile.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("delta must be an integer")
        if not sku or not isinstance(sku, str):
            raise ValidationError("sku is required")

        if delta < 0:
            query = {
                "_id": product_id,
                "is_active": True,
                "variants": {"$elemMatch": {"sku": sku, "stock": {"$gte": -delta}}},
            }
        else:
            query = {"_id": product_id, "variants": {"$elemMatch": {"sku": sku}}}

        result = self._products.update_one(
            query,
            {"$inc": {"variants.$.stock": delta}, "$set": {"updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            self._diagnose(product_id, sku, delta)
        return self.stock_level(product_id, sku)

    def _diagnose(self, product_id: int, sku: str, delta: int):
        product = self._products.find_one({"_id": product_id})
        if product is None or (delta < 0 and not product.get("is_active", False)):
            raise NotFound("Product not found or inactive")
        if not any(v.get("sku") == sku for v in product.get("variants") or []):
            raise NotFound("Variant not found for product")
        raise OutOfStock(
            "Variant is out of stock",
            details={"product_id": product_id, "sku": sku, "requested": -delta},
        )

    def stock_level(self, product_id: int, sku: str) -> int:
        product = self._products.find_one({"_id": product_id}, {"variants": 1})
        if product is None:
            raise NotFound("Product not found")
        for variant in product.get("variants") or []:
            if variant.get("sku") == sku:
                return int(variant.get("stock") or 0)
        raise NotFound("Variant not found for product")

    def reservation(self) -> "Reservation":
        return Reservation(self)


class Reservation:
    """Stock taken for one order, remembered so it can be given back."""

    def __init__(self, ledger: StockLedger):
        self._ledger = ledger
        self.reserved: List[Reserved] = []

    def reserve(self, product_id: int, sku: str, qty: int):
        self._ledger.adjust_variant_stock(product_id, sku, -qty)
        self.reserved.append(Reserved(product_id, sku, qty))

    def reserve_all(self, items: Iterable[Reserved]):
        """Reserve every item in order; on the first failure undo the rest and re-raise."""
        try:
            for item in items:
                self.reserve(item.product_id, item.sku, item.qty)
        except Exception:
            self.rollback()
            raise

    def rollback(self):
        # failures here are logged only; the caller re-raises the original error
        for entry in reversed(self.reserved):
            try:
                self._ledger.adjust_variant_stock(entry.product_id, entry.sku, entry.qty)
            except Exception:
                logger.exception(
                    "Rollback failed for product %s sku %s (+%s)", entry.product_id, entry.sku, entry.qty
                )
        if self.reserved:
            logger.info("Rolled back %d stock reservation(s)", len(self.reserved))
        self.reserved = []
