import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import cache as cache_mod
from database import get_by_id, paginate, utcnow
from deps import Services, get_services
from errors import NotFound, ValidationError
from routers import ok, public_user
from schemas import Address
from security import get_current_user, hash_password, require_roles, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class ProfileUpdateIn(BaseModel):
    firstName: Optional[str] = Field(None, min_length=1, max_length=50)
    lastName: Optional[str] = Field(None, min_length=1, max_length=50)
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[Address] = None


class ChangePasswordIn(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


class RoleIn(BaseModel):
    role: Literal["customer", "farmer", "admin"]


@router.get("/profile")
def get_profile(user=Depends(get_current_user)):
    return ok(public_user(user))


@router.put("/profile")
def update_profile(body: ProfileUpdateIn, user=Depends(get_current_user),
                   services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    changes["updatedAt"] = utcnow()
    updated = services.db["user"].find_one_and_update(
        {"id": user["id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(public_user(updated), "Profile updated")


@router.put("/change-password")
def change_password(body: ChangePasswordIn, user=Depends(get_current_user),
                    services: Services = Depends(get_services)):
    if not verify_password(body.currentPassword, user.get("passwordHash", "")):
        raise ValidationError("Current password is incorrect")
    services.db["user"].update_one({"id": user["id"]}, {"$set": {
        "passwordHash": hash_password(body.newPassword, services.settings.bcrypt_rounds),
        "updatedAt": utcnow(),
    }})
    return ok(message="Password changed")


@router.delete("/account")
def deactivate_account(user=Depends(get_current_user), services: Services = Depends(get_services)):
    now = utcnow()
    services.db["user"].update_one({"id": user["id"]}, {"$set": {"isActive": False, "updatedAt": now}})
    farmer = services.db["farmer"].find_one({"userId": user["id"]})
    if farmer:
        services.db["farmer"].update_one({"id": farmer["id"]}, {"$set": {"isActive": False, "updatedAt": now}})
        services.db["product"].update_many({"farmerId": farmer["id"]}, {"$set": {"isActive": False, "updatedAt": now}})
        cache_mod.invalidate(services.cache, "products:*")
    logger.info("User %s deactivated their account", user["id"])
    return ok(message="Account deactivated")


@router.get("/stats")
def user_stats(user=Depends(get_current_user), services: Services = Depends(get_services)):
    db = services.db
    orders = list(db["order"].find({"customerId": user["id"]}, {"status": 1, "pricing": 1}))
    stats = {
        "totalOrders": len(orders),
        "completedOrders": sum(1 for o in orders if o["status"] == "delivered"),
        "totalSpent": round(sum(o["pricing"]["total"] for o in orders if o["status"] != "cancelled"), 2),
        "reviewsWritten": db["review"].count_documents({"customerId": user["id"]}),
    }
    farmer = db["farmer"].find_one({"userId": user["id"]})
    if farmer:
        stats["farmer"] = {
            "products": db["product"].count_documents({"farmerId": farmer["id"], "isActive": True}),
            "orders": db["order"].count_documents({"items.farmerId": farmer["id"]}),
            "rating": farmer.get("rating"),
        }
    return ok(stats)


# ---- Admin ----

@router.get("")
def list_users(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
               role: Optional[str] = None, search: Optional[str] = None,
               user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    query = {}
    if role:
        query["role"] = role
    if search:
        query["$or"] = [
            {"firstName": {"$regex": search, "$options": "i"}},
            {"lastName": {"$regex": search, "$options": "i"}},
            {"email": {"$regex": search, "$options": "i"}},
        ]
    items, pagination = paginate(services.db, "user", query, page, limit, sort=[("createdAt", -1)])
    return ok([public_user(u) for u in items], pagination=pagination)


@router.put("/{user_id}/role")
def change_role(user_id: str, body: RoleIn, admin=Depends(require_roles("admin")),
                services: Services = Depends(get_services)):
    if not get_by_id(services.db, "user", user_id):
        raise NotFound("User not found")
    updated = services.db["user"].find_one_and_update(
        {"id": user_id}, {"$set": {"role": body.role, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("User %s role changed to %s by %s", user_id, body.role, admin["id"])
    return ok(public_user(updated), "Role updated")
