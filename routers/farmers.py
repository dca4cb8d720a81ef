import logging
from collections import Counter
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import notifications as templates
from database import create_document, get_by_id, list_many, paginate, utcnow
from deps import Services, get_services
from errors import Conflict, NotFound, ValidationError
from policies import authorize
from pricing import is_low_stock
from routers import ok
from schemas import Farmer, FarmLocation
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/farmers", tags=["farmers"])

Specialty = Literal["vegetables", "fruits", "dairy", "meat", "grains", "herbs", "honey", "eggs", "nuts", "berries"]


class FarmerIn(BaseModel):
    farmName: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    specialties: List[Specialty] = Field(default_factory=list)
    isOrganic: bool = False
    farmLocation: Optional[FarmLocation] = None
    deliveryRadius: float = Field(50, ge=0)


class FarmerUpdateIn(BaseModel):
    farmName: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    specialties: Optional[List[Specialty]] = None
    isOrganic: Optional[bool] = None
    farmLocation: Optional[FarmLocation] = None
    deliveryRadius: Optional[float] = Field(None, ge=0)


def _own_profile(user: dict, services: Services) -> dict:
    farmer = services.db["farmer"].find_one({"userId": user["id"]})
    if not farmer:
        raise NotFound("Farmer profile not found")
    return farmer


@router.get("")
def list_farmers(page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=100),
                 region: Optional[str] = None, city: Optional[str] = None,
                 specialty: Optional[str] = None, isOrganic: Optional[bool] = None,
                 isVerified: Optional[bool] = None, search: Optional[str] = None,
                 sort: Literal["rating", "newest", "sales"] = "rating",
                 services: Services = Depends(get_services)):
    query = {"isActive": True}
    if region:
        query["farmLocation.region"] = {"$regex": region, "$options": "i"}
    if city:
        query["farmLocation.city"] = {"$regex": city, "$options": "i"}
    if specialty:
        query["specialties"] = specialty
    if isOrganic is not None:
        query["isOrganic"] = isOrganic
    if isVerified is not None:
        query["isVerified"] = isVerified
    if search:
        query["$or"] = [
            {"farmName": {"$regex": search, "$options": "i"}},
            {"description": {"$regex": search, "$options": "i"}},
        ]
    order = {
        "rating": [("rating.average", -1), ("rating.count", -1)],
        "newest": [("createdAt", -1)],
        "sales": [("totalSales", -1)],
    }[sort]
    items, pagination = paginate(services.db, "farmer", query, page, limit, sort=order)
    return ok(items, pagination=pagination)


@router.get("/featured")
def featured_farmers(limit: int = Query(6, ge=1, le=24), services: Services = Depends(get_services)):
    farmers = list_many(services.db, "farmer", {"isActive": True, "isVerified": True},
                        sort=[("rating.average", -1), ("rating.count", -1)], limit=limit)
    return ok(farmers)


@router.get("/me/dashboard")
def dashboard(user=Depends(require_roles("farmer")), services: Services = Depends(get_services)):
    db = services.db
    farmer = _own_profile(user, services)
    products = list(db["product"].find({"farmerId": farmer["id"]}))
    threshold = services.settings.low_stock_threshold

    by_status = Counter()
    revenue = 0.0
    for order in db["order"].find({"items.farmerId": farmer["id"]}, {"status": 1, "items": 1}):
        by_status[order["status"]] += 1
        if order["status"] != "cancelled":
            revenue += sum(line["total"] for line in order["items"] if line["farmerId"] == farmer["id"])

    return ok({
        "farmer": farmer,
        "products": {
            "total": len(products),
            "active": sum(1 for p in products if p.get("isActive")),
            "outOfStock": sum(1 for p in products if p.get("isActive") and not p["availability"]["inStock"]),
            "lowStock": [
                {"id": p["id"], "name": p["name"], "quantity": p["availability"]["quantity"]}
                for p in products if p.get("isActive") and is_low_stock(p, threshold)
            ],
        },
        "orders": {"total": sum(by_status.values()), "byStatus": dict(by_status)},
        "revenue": round(revenue, 2),
        "rating": farmer.get("rating"),
    })


@router.get("/{farmer_id}")
def get_farmer(farmer_id: str, services: Services = Depends(get_services)):
    farmer = get_by_id(services.db, "farmer", farmer_id)
    if not farmer or not farmer.get("isActive", True):
        raise NotFound("Farmer not found")
    owner = get_by_id(services.db, "user", farmer["userId"]) or {}
    products = list_many(services.db, "product", {"farmerId": farmer_id, "isActive": True},
                         sort=[("createdAt", -1)], limit=12)
    return ok({
        "farmer": farmer,
        "owner": {"firstName": owner.get("firstName"), "lastName": owner.get("lastName"), "avatar": owner.get("avatar")},
        "products": products,
    })


@router.post("", status_code=201)
def create_profile(body: FarmerIn, user=Depends(get_current_user), services: Services = Depends(get_services)):
    if user["role"] == "admin":
        raise ValidationError("Administrators cannot own a farm profile")
    try:
        farmer = create_document(services.db, "farmer", Farmer(userId=user["id"], **body.model_dump()))
    except DuplicateKeyError:
        raise Conflict("Farmer profile already exists")
    if user["role"] != "farmer":
        services.db["user"].update_one({"id": user["id"]}, {"$set": {"role": "farmer", "updatedAt": utcnow()}})
    logger.info("Farmer profile %s created for user %s", farmer["id"], user["id"])
    return ok(farmer, "Farmer profile created")


@router.put("/me")
def update_profile(body: FarmerUpdateIn, user=Depends(require_roles("farmer", "admin")),
                   services: Services = Depends(get_services)):
    farmer = _own_profile(user, services)
    authorize("farmer.edit", user, farmer)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    changes["updatedAt"] = utcnow()
    updated = services.db["farmer"].find_one_and_update(
        {"id": farmer["id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(updated, "Farmer profile updated")


@router.put("/{farmer_id}/verify")
def verify_farmer(farmer_id: str, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    updated = services.db["farmer"].find_one_and_update(
        {"id": farmer_id},
        {"$set": {"isVerified": True, "verificationDate": utcnow(), "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Farmer not found")
    services.notifier.notify(updated["userId"], templates.farmer_verified(updated), send_email=True)
    logger.info("Farmer %s verified by %s", farmer_id, admin["id"])
    return ok(updated, "Farmer verified")
