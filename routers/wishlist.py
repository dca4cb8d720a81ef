from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_by_id, utcnow
from deps import Services, get_services
from errors import Conflict, NotFound, ValidationError
from routers import ok
from schemas import Wishlist, WishlistItem
from security import get_current_user

router = APIRouter(prefix="/wishlist", tags=["wishlist"])


class WishlistItemIn(BaseModel):
    productId: str
    notes: Optional[str] = Field(None, max_length=200)
    priority: Literal["low", "medium", "high"] = "medium"


class WishlistItemUpdateIn(BaseModel):
    notes: Optional[str] = Field(None, max_length=200)
    priority: Optional[Literal["low", "medium", "high"]] = None


class WishlistSettingsIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    isPublic: Optional[bool] = None


def get_or_create_wishlist(db, user_id: str) -> dict:
    wishlist = db["wishlist"].find_one({"userId": user_id})
    if wishlist:
        return wishlist
    try:
        return create_document(db, "wishlist", Wishlist(userId=user_id))
    except DuplicateKeyError:
        return db["wishlist"].find_one({"userId": user_id})


def with_products(db, wishlist: dict) -> dict:
    ids = [item["productId"] for item in wishlist.get("items", [])]
    products = {p["id"]: p for p in db["product"].find({"id": {"$in": ids}, "isActive": True})}
    items = [
        {**item, "product": products[item["productId"]]}
        for item in wishlist.get("items", []) if item["productId"] in products
    ]
    return {**wishlist, "items": items}


@router.get("")
def get_wishlist(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(with_products(services.db, get_or_create_wishlist(services.db, user["id"])))


@router.post("/items", status_code=201)
def add_item(body: WishlistItemIn, user=Depends(get_current_user), services: Services = Depends(get_services)):
    db = services.db
    product = get_by_id(db, "product", body.productId)
    if not product or not product.get("isActive", True):
        raise NotFound("Product not found")
    wishlist = get_or_create_wishlist(db, user["id"])
    item = WishlistItem(addedAt=utcnow(), **body.model_dump())
    updated = db["wishlist"].find_one_and_update(
        {"id": wishlist["id"], "items.productId": {"$ne": body.productId}},
        {"$push": {"items": item.model_dump()}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise Conflict("Product is already in the wishlist")
    return ok(with_products(db, updated), "Added to wishlist")


@router.put("/items/{product_id}")
def update_item(product_id: str, body: WishlistItemUpdateIn, user=Depends(get_current_user),
                services: Services = Depends(get_services)):
    changes = {f"items.$.{k}": v for k, v in body.model_dump(exclude_unset=True).items()}
    if not changes:
        raise ValidationError("Nothing to update")
    changes["updatedAt"] = utcnow()
    updated = services.db["wishlist"].find_one_and_update(
        {"userId": user["id"], "items.productId": product_id},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Product is not in the wishlist")
    return ok(with_products(services.db, updated), "Wishlist updated")


@router.delete("/items/{product_id}")
def remove_item(product_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    wishlist = get_or_create_wishlist(services.db, user["id"])
    updated = services.db["wishlist"].find_one_and_update(
        {"id": wishlist["id"]},
        {"$pull": {"items": {"productId": product_id}}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return ok(with_products(services.db, updated), "Removed from wishlist")


@router.delete("")
def clear_wishlist(user=Depends(get_current_user), services: Services = Depends(get_services)):
    wishlist = get_or_create_wishlist(services.db, user["id"])
    services.db["wishlist"].update_one({"id": wishlist["id"]}, {"$set": {"items": [], "updatedAt": utcnow()}})
    return ok(message="Wishlist cleared")


@router.put("/settings")
def update_settings(body: WishlistSettingsIn, user=Depends(get_current_user),
                    services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    wishlist = get_or_create_wishlist(services.db, user["id"])
    changes["updatedAt"] = utcnow()
    updated = services.db["wishlist"].find_one_and_update(
        {"id": wishlist["id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(updated, "Wishlist settings updated")


@router.get("/public/{user_id}")
def public_wishlist(user_id: str, services: Services = Depends(get_services)):
    wishlist = services.db["wishlist"].find_one({"userId": user_id, "isPublic": True})
    if not wishlist:
        raise NotFound("Wishlist not found")
    return ok(with_products(services.db, wishlist))
