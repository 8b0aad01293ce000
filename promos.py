import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import PROMOS, as_utc, get_documents, utcnow
from discounts import apply_discount
from errors import Conflict, NotFound, ValidationError
from identifiers import ensure_id
from schemas import PromoCreate, PromoUpdate

logger = logging.getLogger(__name__)


class PromoService:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._promos = db[PROMOS]
        self._db = db
        self._clock = clock

    def list_promos(self) -> List[Dict[str, Any]]:
        return get_documents(self._db, PROMOS, sort=[("created_at", -1)])

    def create_promo(self, payload: PromoCreate) -> Dict[str, Any]:
        if self._promos.find_one({"code": payload.code}):
            raise Conflict("Promo code already exists", details={"code": payload.code})
        doc = payload.model_dump(exclude={"id"})
        doc.update({
            "_id": ensure_id(self._promos, payload.id),
            "usage_count": 0,
            "created_at": self._clock(),
        })
        try:
            self._promos.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Promo id already in use", details={"id": doc["_id"]})
        return doc

    def update_promo(self, promo_id: int, payload: PromoUpdate) -> Dict[str, Any]:
        update = {k: v for k, v in payload.model_dump().items() if v is not None}
        if "code" in update and self._promos.find_one({"code": update["code"], "_id": {"$ne": promo_id}}):
            raise Conflict("Promo code already exists", details={"code": update["code"]})
        update["updated_at"] = self._clock()
        result = self._promos.update_one({"_id": promo_id}, {"$set": update})
        if result.matched_count == 0:
            raise NotFound("Promo code not found")
        return self._promos.find_one({"_id": promo_id})

    def delete_promo(self, promo_id: int) -> Dict[str, Any]:
        if self._promos.delete_one({"_id": promo_id}).deleted_count == 0:
            raise NotFound("Promo code not found")
        return {"deleted": True}

    def check_promo(self, code: str, amount: Optional[float] = None) -> Dict[str, Any]:
        """Return the promo if it can be used right now, else raise ValidationError.

        ``amount`` is the order subtotal the code would apply to; when given
        it is checked against the promo's minimum order amount.
        """
        code = (code or "").strip().upper()
        promo = self._promos.find_one({"code": code, "is_active": True})
        if promo is None:
            raise ValidationError("Invalid or expired promo code", details={"code": code})

        now = self._clock()
        start, end = as_utc(promo.get("start_date")), as_utc(promo.get("end_date"))
        if (start and now < start) or (end and now > end):
            raise ValidationError("Invalid or expired promo code", details={"code": code})

        limit = promo.get("usage_limit")
        if limit and promo.get("usage_count", 0) >= limit:
            raise ValidationError("Promo code usage limit reached", details={"code": code})

        minimum = promo.get("min_order_amount")
        if amount is not None and minimum and amount < minimum:
            raise ValidationError(
                f"This promo requires a minimum order of {minimum:g}",
                details={"code": code, "min_order_amount": minimum},
            )
        return promo

    @staticmethod
    def discount_amount(promo: Dict[str, Any], subtotal: float) -> float:
        return round(subtotal - apply_discount(subtotal, promo), 2)

    def record_usage(self, code: str):
        # usage is never given back, even if the order is later cancelled
        self._promos.update_one({"code": code.strip().upper()}, {"$inc": {"usage_count": 1}})
        logger.info("Promo %s used", code)
