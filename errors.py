"""
Error taxonomy for the order core.

Every error carries the HTTP status and machine code the terminal handler in
main.py renders as ``{code, message, details?}``.
"""

from typing import Any, Optional


class StoreError(Exception):
    status_code = 500
    code: Any = None

    def __init__(self, message: str, details: Optional[Any] = None, code: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        payload = {"code": self.code if self.code is not None else self.status_code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(StoreError):
    """Malformed id, phone or payload."""
    status_code = 400


class NotFound(StoreError):
    status_code = 404


class Conflict(StoreError):
    """Duplicate promo code, duplicate id on insert."""
    status_code = 400


class IdExhaustion(Conflict):
    status_code = 500
    code = "ID_EXHAUSTED"


class StateError(StoreError):
    """Illegal lifecycle transition."""
    status_code = 400


class OutOfStock(StateError):
    code = "OUT_OF_STOCK"
