from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import SHIPPING, get_documents, utcnow
from errors import Conflict, NotFound
from schemas import ShippingCreate, ShippingUpdate


class ShippingService:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._shipping = db[SHIPPING]
        self._clock = clock

    def create_entry(self, payload: ShippingCreate) -> Dict[str, Any]:
        doc = payload.model_dump(exclude={"id"})
        doc["_id"] = payload.id.strip().lower()
        doc["updated_at"] = self._clock()
        try:
            self._shipping.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Shipping entry already exists", details={"id": doc["_id"]})
        return doc

    def list_entries(self, limit: int = 100, skip: int = 0) -> Dict[str, Any]:
        items = get_documents(self._db, SHIPPING, sort=[("_id", 1)], limit=limit, skip=skip)
        return {"items": items, "total": self._shipping.count_documents({})}

    def update_entry(self, entry_id: str, payload: ShippingUpdate) -> Dict[str, Any]:
        update = {k: v for k, v in payload.model_dump().items() if v is not None}
        update["updated_at"] = self._clock()
        entry_id = entry_id.strip().lower()
        if self._shipping.update_one({"_id": entry_id}, {"$set": update}).matched_count == 0:
            raise NotFound("Shipping entry not found")
        return self._shipping.find_one({"_id": entry_id})

    def fee_for(self, address: Optional[Dict[str, Any]]) -> float:
        if not address or not address.get("governorate"):
            return 0.0
        entry = self._shipping.find_one({"_id": str(address["governorate"]).strip().lower()})
        return float(entry["price"]) if entry else 0.0
