"""
Promo codes.

`evaluate` is a pure check that computes what a code would give for an order.
`apply` records the usage exactly once per order with a compare-and-set on
`usageCount`, so concurrent orders can never push a code past its limits.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, get_by_id, paginate, utcnow
from errors import Conflict, NotFound, PromoCodeRejected
from schemas import PromoCode

logger = logging.getLogger(__name__)

APPLY_ATTEMPTS = 5


class PromoEvaluation(BaseModel):
    promo: Dict[str, Any]
    discount: float = 0
    free_shipping: bool = False
    eligible_amount: float = 0


def normalise_code(code: str) -> str:
    return (code or "").strip().upper()


def user_usage_count(promo: dict, user_id: str) -> int:
    return sum(1 for usage in promo.get("usedBy") or [] if usage.get("userId") == user_id)


def check_usable(promo: dict, user_id: str, now: Optional[datetime] = None) -> None:
    """Raise PromoCodeRejected unless the code is live and this user may still use it."""
    now = now or utcnow()
    if not promo.get("isActive", True):
        raise PromoCodeRejected("Promo code is not active")
    if now < as_utc(promo["validFrom"]):
        raise PromoCodeRejected("Promo code is not valid yet")
    if now > as_utc(promo["validUntil"]):
        raise PromoCodeRejected("Promo code has expired")

    limit = promo.get("usageLimit") or {}
    total = limit.get("total")
    if total is not None and promo.get("usageCount", 0) >= total:
        raise PromoCodeRejected("Promo code usage limit reached")
    if user_usage_count(promo, user_id) >= limit.get("perUser", 1):
        raise PromoCodeRejected("You have already used this promo code")

    specific = (promo.get("userRestrictions") or {}).get("specificUsers") or []
    if specific and user_id not in specific:
        raise PromoCodeRejected("Promo code is not available for this account")


def compute_discount(promo: dict, base: float) -> float:
    value = float(promo.get("value") or 0)
    if promo["type"] == "percentage":
        discount = base * value / 100
        cap = promo.get("maxDiscountAmount")
        if cap is not None:
            discount = min(discount, float(cap))
    elif promo["type"] == "fixed_amount":
        discount = min(value, base)
    else:
        discount = 0.0
    return round(discount, 2)


class PromoService:
    def __init__(self, db):
        self.db = db

    def get_by_code(self, code: str) -> dict:
        promo = self.db["promocode"].find_one({"code": normalise_code(code)})
        if not promo:
            raise NotFound("Promo code not found")
        return promo

    def _is_new_user(self, user_id: str) -> bool:
        return self.db["order"].count_documents({"customerId": user_id, "status": {"$ne": "cancelled"}}) == 0

    def _with_categories(self, items: List[dict]) -> List[dict]:
        missing = [item["productId"] for item in items if not item.get("categoryId")]
        if not missing:
            return items
        categories = {
            p["id"]: p.get("categoryId")
            for p in self.db["product"].find({"id": {"$in": missing}}, {"id": 1, "categoryId": 1})
        }
        return [
            item if item.get("categoryId") else {**item, "categoryId": categories.get(item["productId"])}
            for item in items
        ]

    def eligible_amount(self, promo: dict, order_amount: float, items: Optional[List[dict]]) -> float:
        if not items:
            return float(order_amount)

        products = set(promo.get("applicableProducts") or [])
        categories = set(promo.get("applicableCategories") or [])
        farmers = set(promo.get("applicableFarmers") or [])
        excluded_products = set(promo.get("excludedProducts") or [])
        excluded_categories = set(promo.get("excludedCategories") or [])
        filtered = bool(products or categories or farmers)

        base = 0.0
        for item in self._with_categories(items):
            if item["productId"] in excluded_products or item.get("categoryId") in excluded_categories:
                continue
            if filtered and not (
                item["productId"] in products
                or item.get("categoryId") in categories
                or item.get("farmerId") in farmers
            ):
                continue
            base += float(item.get("total", item.get("price", 0) * item.get("quantity", 1)))
        return round(base, 2)

    def evaluate(self, code: str, user_id: str, order_amount: float,
                 items: Optional[List[dict]] = None, now: Optional[datetime] = None) -> PromoEvaluation:
        promo = self.get_by_code(code)
        check_usable(promo, user_id, now)

        if (promo.get("userRestrictions") or {}).get("newUsersOnly") and not self._is_new_user(user_id):
            raise PromoCodeRejected("Promo code is only available for new customers")

        min_amount = float(promo.get("minOrderAmount") or 0)
        if order_amount < min_amount:
            raise PromoCodeRejected(f"Minimum order amount for this promo code is {min_amount:.2f}")

        base = self.eligible_amount(promo, order_amount, items)
        if base <= 0:
            raise PromoCodeRejected("Promo code does not apply to any item in this order")

        return PromoEvaluation(
            promo=promo,
            discount=compute_discount(promo, base),
            free_shipping=promo["type"] == "free_shipping",
            eligible_amount=base,
        )

    def apply(self, promo: dict, user_id: str, order_id: str, discount: float) -> dict:
        usage = {"userId": user_id, "orderId": order_id, "discountAmount": discount, "usedAt": utcnow()}
        current = promo
        for _ in range(APPLY_ATTEMPTS):
            if any(u.get("orderId") == order_id for u in current.get("usedBy") or []):
                return current
            check_usable(current, user_id)
            updated = self.db["promocode"].find_one_and_update(
                {"id": current["id"], "usageCount": current.get("usageCount", 0)},
                {"$inc": {"usageCount": 1}, "$push": {"usedBy": usage}, "$set": {"updatedAt": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                logger.info("Promo code %s applied to order %s", current["code"], order_id)
                return updated
            current = get_by_id(self.db, "promocode", current["id"])
            if not current:
                raise PromoCodeRejected("Promo code no longer exists")
        raise PromoCodeRejected("Promo code is in high demand, please try again")

    def release(self, promo_id: str, order_id: str) -> bool:
        res = self.db["promocode"].update_one(
            {"id": promo_id, "usedBy.orderId": order_id},
            {"$inc": {"usageCount": -1}, "$pull": {"usedBy": {"orderId": order_id}},
             "$set": {"updatedAt": utcnow()}},
        )
        if res.modified_count:
            logger.info("Promo code usage for order %s released", order_id)
        return res.modified_count == 1

    # ---- administration ----

    def create(self, data: dict, created_by: Optional[str] = None) -> dict:
        promo = PromoCode(**{**data, "createdBy": created_by})
        try:
            return create_document(self.db, "promocode", promo)
        except DuplicateKeyError:
            raise Conflict("Promo code already exists")

    def update(self, promo_id: str, changes: dict) -> dict:
        existing = get_by_id(self.db, "promocode", promo_id)
        if not existing:
            raise NotFound("Promo code not found")
        fields = {k: v for k, v in existing.items() if k in PromoCode.model_fields}
        merged = PromoCode(**{**fields, **changes}).model_dump()
        updates = {k: merged[k] for k in changes if k in merged and k not in ("usedBy", "usageCount")}
        updates["updatedAt"] = utcnow()
        try:
            return self.db["promocode"].find_one_and_update(
                {"id": promo_id}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise Conflict("Promo code already exists")

    def delete(self, promo_id: str) -> None:
        res = self.db["promocode"].delete_one({"id": promo_id})
        if not res.deleted_count:
            raise NotFound("Promo code not found")

    def list_promos(self, page: int = 1, limit: int = 20, is_active: Optional[bool] = None,
                    search: Optional[str] = None):
        query: Dict[str, Any] = {}
        if is_active is not None:
            query["isActive"] = is_active
        if search:
            query["$or"] = [
                {"code": {"$regex": search, "$options": "i"}},
                {"name": {"$regex": search, "$options": "i"}},
            ]
        return paginate(self.db, "promocode", query, page, limit, sort=[("createdAt", -1)])

    def stats(self, promo_id: str) -> dict:
        promo = get_by_id(self.db, "promocode", promo_id)
        if not promo:
            raise NotFound("Promo code not found")
        usages = promo.get("usedBy") or []
        by_date: Dict[str, dict] = defaultdict(lambda: {"count": 0, "discount": 0.0})
        for usage in usages:
            day = as_utc(usage["usedAt"]).date().isoformat()
            by_date[day]["count"] += 1
            by_date[day]["discount"] = round(by_date[day]["discount"] + float(usage.get("discountAmount") or 0), 2)
        return {
            "code": promo["code"],
            "totalUsage": len(usages),
            "totalDiscount": round(sum(float(u.get("discountAmount") or 0) for u in usages), 2),
            "uniqueUsers": len({u.get("userId") for u in usages}),
            "usageByDate": [{"date": day, **values} for day, values in sorted(by_date.items())],
        }
