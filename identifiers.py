"""
Six-digit identifiers for every collection.

Ids are drawn at random and checked against the collection rather than
taken from a counter, so deleting documents never requires compaction.
"""

import random
import re
from typing import Any, Optional

from pymongo.collection import Collection

import config
from errors import IdExhaustion, ValidationError

MIN_ID = 100000
MAX_ID = 999999

_PHONE_RE = re.compile(r"^\d{11}$")


def is_six_digit_integer(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return MIN_ID <= value <= MAX_ID


def is_valid_phone(phone: Any) -> bool:
    return isinstance(phone, str) and bool(_PHONE_RE.match(phone))


def generate_unique_id(collection: Collection, rng=random, attempts: Optional[int] = None) -> int:
    attempts = attempts or config.ID_MAX_ATTEMPTS
    for _ in range(attempts):
        candidate = rng.randint(MIN_ID, MAX_ID)
        if collection.find_one({"_id": candidate}, {"_id": 1}) is None:
            return candidate
    raise IdExhaustion(
        f"Failed to generate a unique 6-digit id for '{collection.name}' after {attempts} attempts"
    )


def ensure_id(collection: Collection, supplied_id: Optional[int] = None, rng=random) -> int:
    """Reuse a caller-supplied id, or draw a fresh one.

    A supplied id is only checked for shape; a collision surfaces later as a
    duplicate key on insert.
    """
    if supplied_id is None:
        return generate_unique_id(collection, rng=rng)
    if not is_six_digit_integer(supplied_id):
        raise ValidationError("_id must be a 6-digit integer")
    return supplied_id
