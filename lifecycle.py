"""
Order lifecycle rules.

    processing -> confirmed -> shipped -> delivered
    processing -> cancelled
    delivered -> return-request -> returned
    return-request -> delivered            (customer withdraws the request)
"""

from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional

import config
from database import as_utc
from errors import StateError

PROCESSING = "processing"
CONFIRMED = "confirmed"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
RETURN_REQUEST = "return-request"
RETURNED = "returned"

CUSTOMER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PROCESSING: frozenset({CANCELLED}),
    DELIVERED: frozenset({RETURN_REQUEST}),
    RETURN_REQUEST: frozenset({DELIVERED, RETURN_REQUEST}),
}

RETURN_WINDOW = timedelta(days=config.RETURN_WINDOW_DAYS)


def customer_can_move(current: str, requested: str) -> bool:
    return requested in CUSTOMER_TRANSITIONS.get(current, frozenset())


def ensure_customer_editable(status: str):
    if status != PROCESSING:
        raise StateError("Order can only be edited while processing", details={"order_status": status})


def ensure_customer_can_cancel(status: str):
    if not customer_can_move(status, CANCELLED):
        raise StateError(
            "Only processing orders can be cancelled by customer", details={"order_status": status}
        )


def return_reference(order: dict) -> Optional[datetime]:
    return as_utc(order.get("updated_at") or order.get("placed_at"))


def ensure_return_transition(current: str, requested: str, reference: Optional[datetime], now: datetime):
    """Police delivered <-> return-request moves.

    Requesting a return must happen within RETURN_WINDOW of ``reference``;
    withdrawing a request is allowed at any time.
    """
    if not customer_can_move(current, requested):
        raise StateError(
            "Return can only be requested for delivered orders",
            details={"order_status": current, "requested": requested},
        )
    if requested == RETURN_REQUEST and reference is not None:
        if as_utc(now) - reference > RETURN_WINDOW:
            raise StateError(
                f"Return request period ({config.RETURN_WINDOW_DAYS} days) has expired",
                details={"reference": reference.isoformat()},
            )
