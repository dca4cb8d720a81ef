from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from database import create_document, get_by_id, list_many, utcnow
from deps import Services, get_services
from errors import NotFound, ValidationError
from routers import ok
from schemas import Address, PickupPoint, WorkingHours
from security import require_roles

router = APIRouter(prefix="/pickup-points", tags=["pickup-points"])

Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class PickupPointIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    address: Address
    workingHours: Dict[Weekday, WorkingHours] = Field(default_factory=dict)
    phone: Optional[str] = None
    email: Optional[str] = None
    capacity: int = Field(100, ge=1)
    description: Optional[str] = None
    facilities: List[str] = Field(default_factory=list)
    managerId: Optional[str] = None


class PickupPointUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    address: Optional[Address] = None
    workingHours: Optional[Dict[Weekday, WorkingHours]] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=1)
    description: Optional[str] = None
    facilities: Optional[List[str]] = None
    managerId: Optional[str] = None
    isActive: Optional[bool] = None


@router.get("")
def list_pickup_points(city: Optional[str] = None, services: Services = Depends(get_services)):
    query = {"isActive": True}
    if city:
        query["address.city"] = {"$regex": f"^{city}$", "$options": "i"}
    return ok(list_many(services.db, "pickuppoint", query, sort=[("name", 1)]))


@router.get("/{point_id}")
def get_pickup_point(point_id: str, services: Services = Depends(get_services)):
    point = get_by_id(services.db, "pickuppoint", point_id)
    if not point:
        raise NotFound("Pickup point not found")
    return ok(point)


@router.post("", status_code=201)
def create_pickup_point(body: PickupPointIn, admin=Depends(require_roles("admin")),
                        services: Services = Depends(get_services)):
    return ok(create_document(services.db, "pickuppoint", PickupPoint(**body.model_dump())), "Pickup point created")


@router.put("/{point_id}")
def update_pickup_point(point_id: str, body: PickupPointUpdateIn, admin=Depends(require_roles("admin")),
                        services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    changes["updatedAt"] = utcnow()
    updated = services.db["pickuppoint"].find_one_and_update(
        {"id": point_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        raise NotFound("Pickup point not found")
    return ok(updated, "Pickup point updated")


@router.delete("/{point_id}")
def delete_pickup_point(point_id: str, admin=Depends(require_roles("admin")),
                        services: Services = Depends(get_services)):
    res = services.db["pickuppoint"].update_one({"id": point_id}, {"$set": {"isActive": False, "updatedAt": utcnow()}})
    if not res.matched_count:
        raise NotFound("Pickup point not found")
    return ok(message="Pickup point deactivated")
