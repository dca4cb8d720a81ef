from datetime import datetime
from typing import Optional

from database import as_utc, utcnow


def active_discounts(product: dict, now: Optional[datetime] = None) -> list:
    now = now or utcnow()
    active = []
    for discount in product.get("discounts") or []:
        if not discount.get("isActive", True):
            continue
        start = as_utc(discount.get("startDate"))
        end = as_utc(discount.get("endDate"))
        if start is None or end is None:
            continue
        if start <= now <= end:
            active.append(discount)
    return active


def _apply_discount(amount: float, discount: dict) -> float:
    value = float(discount.get("value") or 0)
    if discount.get("type") == "percentage":
        return amount * (1 - value / 100)
    return max(0.0, amount - value)


def current_price(product: dict, now: Optional[datetime] = None, quantity: Optional[int] = None) -> float:
    """Base price adjusted by the best currently active discount.

    A discount carrying `minQuantity` only counts when a quantity is given and
    reaches it; catalogue listings (no quantity) ignore such discounts.
    """
    base = float(product["price"]["amount"])
    best = base
    for discount in active_discounts(product, now):
        min_qty = discount.get("minQuantity")
        if min_qty and (quantity is None or quantity < min_qty):
            continue
        best = min(best, _apply_discount(base, discount))
    return round(best, 2)


def delivery_fee(delivery_type: str, subtotal: float, settings) -> float:
    if delivery_type != "delivery":
        return 0.0
    if subtotal >= settings.free_delivery_threshold:
        return 0.0
    return float(settings.delivery_fee)


def is_low_stock(product: dict, threshold: int) -> bool:
    availability = product.get("availability") or {}
    return bool(availability.get("inStock")) and int(availability.get("quantity", 0)) < threshold
