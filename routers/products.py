import hashlib
import json
import logging
import re
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import cache as cache_mod
from database import create_document, get_by_id, list_many, paginate, utcnow
from deps import Services, get_services
from errors import NotFound, ValidationError
from policies import authorize
from pricing import current_price, is_low_stock
from routers import ok
from schemas import Availability, Discount, Price, Product
from security import require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])

SORTS = {
    "newest": [("createdAt", -1)],
    "price_asc": [("price.amount", 1)],
    "price_desc": [("price.amount", -1)],
    "rating": [("rating.average", -1), ("rating.count", -1)],
    "popular": [("totalSold", -1)],
}


class ProductIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    categoryId: str
    subcategory: Optional[str] = None
    price: Price
    images: List[str] = Field(default_factory=list)
    availability: Availability = Field(default_factory=Availability)
    isOrganic: bool = False
    tags: List[str] = Field(default_factory=list)
    discounts: List[Discount] = Field(default_factory=list)


class ProductUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    categoryId: Optional[str] = None
    subcategory: Optional[str] = None
    price: Optional[Price] = None
    images: Optional[List[str]] = None
    availability: Optional[dict] = None
    isOrganic: Optional[bool] = None
    tags: Optional[List[str]] = None
    discounts: Optional[List[Discount]] = None
    isActive: Optional[bool] = None


def with_price(product: dict) -> dict:
    return {**product, "currentPrice": current_price(product)}


def _farmer_for(user: dict, services: Services) -> Optional[dict]:
    return services.db["farmer"].find_one({"userId": user["id"]})


def _load(product_id: str, services: Services) -> dict:
    product = get_by_id(services.db, "product", product_id)
    if not product:
        raise NotFound("Product not found")
    return product


@router.get("")
def list_products(page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=100),
                  category: Optional[str] = None, farmer: Optional[str] = None,
                  search: Optional[str] = None, minPrice: Optional[float] = Query(None, ge=0),
                  maxPrice: Optional[float] = Query(None, ge=0), isOrganic: Optional[bool] = None,
                  inStock: Optional[bool] = None,
                  sort: Literal["newest", "price_asc", "price_desc", "rating", "popular"] = "newest",
                  services: Services = Depends(get_services)):
    params = dict(page=page, limit=limit, category=category, farmer=farmer, search=search, minPrice=minPrice,
                  maxPrice=maxPrice, isOrganic=isOrganic, inStock=inStock, sort=sort)
    key = "products:list:" + hashlib.md5(json.dumps(params, sort_keys=True).encode()).hexdigest()
    if services.cache is not None:
        cached = services.cache.get(key)
        if cached is not None:
            return cached

    query = {"isActive": True}
    if category:
        query["categoryId"] = category
    if farmer:
        query["farmerId"] = farmer
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    price = {}
    if minPrice is not None:
        price["$gte"] = minPrice
    if maxPrice is not None:
        price["$lte"] = maxPrice
    if price:
        query["price.amount"] = price
    if isOrganic is not None:
        query["isOrganic"] = isOrganic
    if inStock is not None:
        query["availability.inStock"] = inStock

    items, pagination = paginate(services.db, "product", query, page, limit, sort=SORTS[sort])
    body = ok([with_price(p) for p in items], pagination=pagination)
    if services.cache is not None:
        services.cache.set(key, body, ttl=300)
    return body


@router.get("/low-stock")
def low_stock(user=Depends(require_roles("farmer")), services: Services = Depends(get_services)):
    farmer = _farmer_for(user, services)
    if not farmer:
        raise NotFound("Farmer profile not found")
    threshold = services.settings.low_stock_threshold
    products = list_many(services.db, "product", {"farmerId": farmer["id"], "isActive": True},
                         sort=[("availability.quantity", 1)])
    return ok([p for p in products if is_low_stock(p, threshold)], threshold=threshold)


@router.get("/{product_id}")
def get_product(product_id: str, services: Services = Depends(get_services)):
    product = _load(product_id, services)
    if not product.get("isActive", True):
        raise NotFound("Product not found")
    farmer = get_by_id(services.db, "farmer", product["farmerId"]) or {}
    reviews = list_many(services.db, "review", {"productId": product_id, "isVisible": True},
                        sort=[("createdAt", -1)], limit=5)
    return ok({
        "product": with_price(product),
        "farmer": {k: farmer.get(k) for k in ("id", "farmName", "isVerified", "isOrganic", "rating", "farmLocation")},
        "reviews": reviews,
    })


@router.post("", status_code=201)
def create_product(body: ProductIn, user=Depends(require_roles("farmer")), services: Services = Depends(get_services)):
    farmer = _farmer_for(user, services)
    if not farmer or not farmer.get("isActive", True):
        raise ValidationError("Create an active farmer profile first")
    if not get_by_id(services.db, "category", body.categoryId):
        raise ValidationError("Category not found")
    product = create_document(services.db, "product", Product(farmerId=farmer["id"], **body.model_dump()))
    cache_mod.invalidate(services.cache, "products:*")
    logger.info("Product %s created by farmer %s", product["id"], farmer["id"])
    return ok(product, "Product created")


@router.put("/{product_id}")
def update_product(product_id: str, body: ProductUpdateIn, user=Depends(require_roles("farmer", "admin")),
                   services: Services = Depends(get_services)):
    product = _load(product_id, services)
    authorize("product.edit", user, product, farmer=_farmer_for(user, services))

    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    if changes.get("categoryId") and not get_by_id(services.db, "category", changes["categoryId"]):
        raise ValidationError("Category not found")
    if "availability" in changes:
        merged = {**product.get("availability", {}), **changes["availability"]}
        if "quantity" in changes["availability"] and "inStock" not in changes["availability"]:
            merged["inStock"] = merged["quantity"] > 0
        changes["availability"] = Availability(**merged).model_dump()
    changes["updatedAt"] = utcnow()

    updated = services.db["product"].find_one_and_update(
        {"id": product_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    cache_mod.invalidate(services.cache, "products:*")
    return ok(with_price(updated), "Product updated")


@router.delete("/{product_id}")
def delete_product(product_id: str, user=Depends(require_roles("farmer", "admin")),
                   services: Services = Depends(get_services)):
    product = _load(product_id, services)
    authorize("product.edit", user, product, farmer=_farmer_for(user, services))
    services.db["product"].update_one({"id": product_id}, {"$set": {"isActive": False, "updatedAt": utcnow()}})
    cache_mod.invalidate(services.cache, "products:*")
    return ok(message="Product deleted")
