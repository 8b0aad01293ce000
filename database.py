"""
MongoDB access helpers.

The database handle is created by the application factory and passed to the
services explicitly; nothing here caches a connection at module level.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import MongoClient
from pymongo.database import Database

import config

PRODUCTS = "products"
ORDERS = "orders"
USERS = "users"
PROMOS = "promos"
SHIPPING = "shipping"


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Database:
    # MongoClient connects lazily, so this is safe to call at import time
    client = MongoClient(url or config.DATABASE_URL)
    return client[name or config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands datetimes back naive; they are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_document(db: Database, collection: str, data: Dict[str, Any]) -> Any:
    return db[collection].insert_one(dict(data)).inserted_id


def get_documents(
    db: Database,
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: int = 0,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    cursor = db[collection].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
