from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from deps import Services, get_services
from routers import ok
from security import get_current_user, require_roles

router = APIRouter(prefix="/reviews", tags=["reviews"])


class ReviewIn(BaseModel):
    productId: str
    orderId: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=500)


class ReviewUpdateIn(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=500)


class ResponseIn(BaseModel):
    text: str = Field(..., min_length=1, max_length=500)


@router.post("", status_code=201)
def create_review(body: ReviewIn, user=Depends(require_roles("customer")), services: Services = Depends(get_services)):
    review = services.reviews.create_review(user, body.productId, body.orderId, body.rating,
                                            title=body.title, comment=body.comment)
    return ok(review, "Review created")


@router.get("/product/{product_id}")
def product_reviews(product_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50),
                    sort: Literal["newest", "oldest", "rating_high", "rating_low", "helpful"] = "newest",
                    rating: Optional[int] = Query(None, ge=1, le=5), services: Services = Depends(get_services)):
    result = services.reviews.product_reviews(product_id, page, limit, sort, rating)
    return ok(result["reviews"], pagination=result["pagination"], rating=result["rating"],
              distribution=result["distribution"])


@router.get("/farmer/{farmer_id}")
def farmer_reviews(farmer_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50),
                   services: Services = Depends(get_services)):
    result = services.reviews.farmer_reviews(farmer_id, page, limit)
    return ok(result["reviews"], pagination=result["pagination"], rating=result["rating"])


@router.put("/{review_id}")
def update_review(review_id: str, body: ReviewUpdateIn, user=Depends(get_current_user),
                  services: Services = Depends(get_services)):
    review = services.reviews.update_review(review_id, user, body.model_dump(exclude_unset=True))
    return ok(review, "Review updated")


@router.delete("/{review_id}")
def delete_review(review_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    services.reviews.delete_review(review_id, user)
    return ok(message="Review deleted")


@router.post("/{review_id}/helpful")
def helpful(review_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    review = services.reviews.add_helpful_vote(review_id, user)
    return ok({"helpfulVotes": review["helpfulVotes"]})


@router.post("/{review_id}/response")
def respond(review_id: str, body: ResponseIn, user=Depends(require_roles("farmer")),
            services: Services = Depends(get_services)):
    return ok(services.reviews.respond(review_id, user, body.text), "Response added")
