"""
Reviews and the rating aggregates derived from them.

`rating.average` / `rating.count` on products and farmers are recomputed from
all visible reviews after every review mutation, never incremented.
"""

import logging
import math
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import cache as cache_mod
import notifications as templates
from database import create_document, get_by_id, paginate, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationError
from policies import authorize
from schemas import Review, ReviewResponse

logger = logging.getLogger(__name__)

REVIEW_SORTS = {
    "newest": [("createdAt", -1)],
    "oldest": [("createdAt", 1)],
    "rating_high": [("rating", -1), ("createdAt", -1)],
    "rating_low": [("rating", 1), ("createdAt", -1)],
    "helpful": [("helpfulVotes", -1), ("createdAt", -1)],
}


def round_half_up(value: float) -> float:
    """One decimal place, halves away from zero (4.25 -> 4.3)."""
    return math.floor(value * 10 + 0.5) / 10


def _aggregate(db, match: dict) -> Dict[str, Any]:
    rows = list(db["review"].aggregate([
        {"$match": {**match, "isVisible": True}},
        {"$group": {"_id": None, "average": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    if not rows:
        return {"average": 0, "count": 0}
    return {"average": round_half_up(float(rows[0]["average"] or 0)), "count": int(rows[0]["count"])}


def recompute_product_rating(db, product_id: str) -> Dict[str, Any]:
    summary = _aggregate(db, {"productId": product_id})
    db["product"].update_one({"id": product_id}, {"$set": {"rating": summary}})
    return summary


def recompute_farmer_rating(db, farmer_id: str) -> Dict[str, Any]:
    summary = _aggregate(db, {"farmerId": farmer_id})
    db["farmer"].update_one({"id": farmer_id}, {"$set": {"rating": summary}})
    return summary


class ReviewService:
    def __init__(self, db, notifier=None, cache=None):
        self.db = db
        self.notifier = notifier
        self.cache = cache

    def _review(self, review_id: str) -> dict:
        review = get_by_id(self.db, "review", review_id)
        if not review:
            raise NotFound("Review not found")
        return review

    def _recompute(self, review: dict) -> None:
        recompute_product_rating(self.db, review["productId"])
        recompute_farmer_rating(self.db, review["farmerId"])
        cache_mod.invalidate(self.cache, "products:*")

    def create_review(self, customer: dict, product_id: str, order_id: str, rating: int,
                      title: Optional[str] = None, comment: Optional[str] = None) -> dict:
        order = get_by_id(self.db, "order", order_id)
        if not order:
            raise NotFound("Order not found")
        if order["customerId"] != customer["id"]:
            raise Forbidden("You can only review your own orders")
        if order["status"] != "delivered":
            raise ValidationError("You can only review products from delivered orders")
        if not any(line["productId"] == product_id for line in order["items"]):
            raise ValidationError("This product is not part of the order")
        product = get_by_id(self.db, "product", product_id)
        if not product:
            raise NotFound("Product not found")

        try:
            review = create_document(self.db, "review", Review(
                customerId=customer["id"],
                productId=product_id,
                farmerId=product["farmerId"],
                orderId=order_id,
                rating=rating,
                title=title,
                comment=comment,
            ))
        except DuplicateKeyError:
            raise Conflict("You have already reviewed this product for this order")

        self._recompute(review)
        logger.info("Review %s created for product %s", review["id"], product_id)
        if self.notifier is not None:
            farmer = get_by_id(self.db, "farmer", product["farmerId"])
            if farmer:
                self.notifier.notify(farmer["userId"], templates.review_received(review, product))
        return review

    def update_review(self, review_id: str, user: dict, changes: dict) -> dict:
        review = self._review(review_id)
        authorize("review.edit", user, review)
        allowed = {k: v for k, v in changes.items() if k in ("rating", "title", "comment") and v is not None}
        if "rating" in allowed and not 1 <= int(allowed["rating"]) <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        allowed["updatedAt"] = utcnow()
        updated = self.db["review"].find_one_and_update(
            {"id": review_id}, {"$set": allowed}, return_document=ReturnDocument.AFTER
        )
        self._recompute(updated)
        return updated

    def delete_review(self, review_id: str, user: dict) -> None:
        review = self._review(review_id)
        authorize("review.edit", user, review)
        self.db["review"].delete_one({"id": review_id})
        self._recompute(review)
        logger.info("Review %s deleted by %s", review_id, user["id"])

    def add_helpful_vote(self, review_id: str, user: dict) -> dict:
        review = self._review(review_id)
        if review["customerId"] == user["id"]:
            raise ValidationError("You cannot vote for your own review")
        updated = self.db["review"].find_one_and_update(
            {"id": review_id, "helpfulVoters": {"$ne": user["id"]}},
            {"$inc": {"helpfulVotes": 1}, "$push": {"helpfulVoters": user["id"]}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise Conflict("You have already marked this review as helpful")
        return updated

    def respond(self, review_id: str, user: dict, text: str) -> dict:
        review = self._review(review_id)
        farmer = self.db["farmer"].find_one({"userId": user["id"]})
        authorize("review.respond", user, review, farmer=farmer)
        response = ReviewResponse(text=text, respondedAt=utcnow(), respondedBy=user["id"]).model_dump()
        return self.db["review"].find_one_and_update(
            {"id": review_id},
            {"$set": {"response": response, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def product_reviews(self, product_id: str, page: int = 1, limit: int = 10,
                        sort: str = "newest", rating: Optional[int] = None) -> dict:
        product = get_by_id(self.db, "product", product_id)
        if not product:
            raise NotFound("Product not found")
        query: Dict[str, Any] = {"productId": product_id, "isVisible": True}
        if rating:
            query["rating"] = rating
        items, pagination = paginate(self.db, "review", query, page, limit,
                                     sort=REVIEW_SORTS.get(sort, REVIEW_SORTS["newest"]))

        distribution = {str(star): 0 for star in range(1, 6)}
        for row in self.db["review"].find({"productId": product_id, "isVisible": True}, {"rating": 1}):
            distribution[str(row["rating"])] += 1
        return {
            "reviews": items,
            "pagination": pagination,
            "rating": product.get("rating") or {"average": 0, "count": 0},
            "distribution": distribution,
        }

    def farmer_reviews(self, farmer_id: str, page: int = 1, limit: int = 10) -> dict:
        farmer = get_by_id(self.db, "farmer", farmer_id)
        if not farmer:
            raise NotFound("Farmer not found")
        items, pagination = paginate(self.db, "review", {"farmerId": farmer_id, "isVisible": True},
                                     page, limit, sort=[("createdAt", -1)])
        return {"reviews": items, "pagination": pagination, "rating": farmer.get("rating")}
