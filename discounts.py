from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from database import as_utc
from schemas import Discount

DiscountLike = Union[Discount, Dict[str, Any], None]


def _coerce(discount: DiscountLike) -> Optional[Discount]:
    if discount is None or isinstance(discount, Discount):
        return discount
    return Discount.model_validate(discount)


def is_valid(discount: DiscountLike, now: datetime) -> bool:
    """True if the discount is active and ``now`` lies inside its window.

    A missing bound leaves that side of the window open.
    """
    discount = _coerce(discount)
    if discount is None or not discount.is_active:
        return False
    now = as_utc(now)
    start, end = as_utc(discount.start_date), as_utc(discount.end_date)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def apply_discount(base_price: float, discount: DiscountLike) -> float:
    discount = _coerce(discount)
    if discount is None:
        return base_price
    if discount.type == "percentage":
        return max(0.0, base_price * (1 - discount.value / 100))
    if discount.type == "fixed":
        return max(0.0, base_price - discount.value)
    return base_price


def select_discount(product: Dict[str, Any], variant: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # a variant discount shadows the product one even when it is not currently valid
    return variant.get("discount") or product.get("discount") or None


def variant_price(product: Dict[str, Any], variant: Dict[str, Any]) -> float:
    if variant.get("price") is not None:
        return float(variant["price"])
    return float(product.get("base_price") or 0) + float(variant.get("price_modifier") or 0)


def price_snapshot(
    product: Dict[str, Any], variant: Dict[str, Any], now: datetime
) -> Tuple[float, float, Optional[Dict[str, Any]], bool]:
    """Return (original_price, price_at_purchase, discount_snapshot, discount_applied)."""
    original = round(variant_price(product, variant), 2)
    source = select_discount(product, variant)
    snapshot = dict(source) if source else None
    applied = is_valid(snapshot, now)
    price = round(apply_discount(original, snapshot), 2) if applied else original
    return original, price, snapshot, applied


def list_active_discounts(products: Iterable[Dict[str, Any]], now: datetime) -> Dict[str, list]:
    result = {"product_discounts": [], "variant_discounts": []}
    for product in products:
        base = float(product.get("base_price") or 0)
        if is_valid(product.get("discount"), now):
            result["product_discounts"].append({
                "scope": "product",
                "product_id": product["_id"],
                "product_name": product.get("name"),
                "base_price": base,
                "discounted_price": round(apply_discount(base, product["discount"]), 2),
                "discount": product["discount"],
            })
        for variant in product.get("variants") or []:
            if not is_valid(variant.get("discount"), now):
                continue
            price = variant_price(product, variant)
            result["variant_discounts"].append({
                "scope": "variant",
                "product_id": product["_id"],
                "product_name": product.get("name"),
                "sku": variant["sku"],
                "color": variant.get("color"),
                "size": variant.get("size"),
                "base_price": price,
                "discounted_price": round(apply_discount(price, variant["discount"]), 2),
                "discount": variant["discount"],
            })
    return result
