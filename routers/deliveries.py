import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_by_id, paginate, utcnow
from deps import Services, get_services
from errors import Conflict, InvalidTransition, NotFound, ValidationError
from policies import authorize, is_admin
from routers import ok
from schemas import ORDER_FLOW, Delivery, DeliveryRating, Driver
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deliveries", tags=["deliveries"])

DELIVERY_TRANSITIONS = {
    "pending": ("assigned", "in_transit", "failed", "cancelled"),
    "assigned": ("in_transit", "failed", "cancelled"),
    "in_transit": ("delivered", "failed"),
    "failed": ("assigned",),
}

# Order status reached when a delivery enters the given status.
ORDER_STATUS_FOR = {"in_transit": "in_transit", "delivered": "delivered"}


class DeliveryIn(BaseModel):
    orderId: str
    driver: Optional[Driver] = None
    estimatedDeliveryTime: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)


class DeliveryStatusIn(BaseModel):
    status: Literal["assigned", "in_transit", "delivered", "failed", "cancelled"]
    note: Optional[str] = Field(None, max_length=500)


class AssignIn(BaseModel):
    driver: Driver
    estimatedDeliveryTime: Optional[datetime] = None


class RatingIn(BaseModel):
    score: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


def _farmer(user: dict, services: Services) -> Optional[dict]:
    return services.db["farmer"].find_one({"userId": user["id"]}) if user.get("role") == "farmer" else None


def _load(delivery_id: str, services: Services):
    delivery = get_by_id(services.db, "delivery", delivery_id)
    if not delivery:
        raise NotFound("Delivery not found")
    order = get_by_id(services.db, "order", delivery["orderId"])
    if not order:
        raise NotFound("Order not found")
    return delivery, order


def _history(status: str, user: dict, note: Optional[str] = None) -> dict:
    return {"status": status, "timestamp": utcnow(), "updatedBy": user["id"], "note": note}


@router.get("")
def list_deliveries(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), status: Optional[str] = None,
                    user=Depends(get_current_user), services: Services = Depends(get_services)):
    db = services.db
    query = {}
    if not is_admin(user):
        farmer = _farmer(user, services)
        order_filter = {"items.farmerId": farmer["id"]} if farmer else {"customerId": user["id"]}
        query["orderId"] = {"$in": [o["id"] for o in db["order"].find(order_filter, {"id": 1})]}
    if status:
        query["status"] = status
    items, pagination = paginate(db, "delivery", query, page, limit, sort=[("scheduledDate", 1)])
    return ok(items, pagination=pagination)


@router.get("/{delivery_id}")
def get_delivery(delivery_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    delivery, order = _load(delivery_id, services)
    authorize("delivery.view", user, order, farmer=_farmer(user, services))
    return ok({"delivery": delivery, "orderNumber": order["orderNumber"], "orderStatus": order["status"]})


@router.post("", status_code=201)
def create_delivery(body: DeliveryIn, user=Depends(require_roles("farmer", "admin")),
                    services: Services = Depends(get_services)):
    order = get_by_id(services.db, "order", body.orderId)
    if not order:
        raise NotFound("Order not found")
    authorize("delivery.manage", user, order, farmer=_farmer(user, services))
    if order["status"] in ("cancelled", "delivered"):
        raise ValidationError(f"Order is already {order['status']}")

    info = order["delivery"]
    try:
        delivery = create_document(services.db, "delivery", Delivery(
            orderId=order["id"],
            type=info["type"],
            status="assigned" if body.driver else "pending",
            driver=body.driver,
            address=info.get("address"),
            pickupLocation=info.get("pickupLocation"),
            scheduledDate=info["scheduledDate"],
            timeSlot=info.get("timeSlot"),
            estimatedDeliveryTime=body.estimatedDeliveryTime,
            deliveryFee=order["pricing"]["deliveryFee"],
            notes=body.notes,
            history=[_history("assigned" if body.driver else "pending", user, "Delivery created")],
        ))
    except DuplicateKeyError:
        raise Conflict("Delivery for this order already exists")
    return ok(delivery, "Delivery created")


@router.put("/{delivery_id}/status")
def update_status(delivery_id: str, body: DeliveryStatusIn, user=Depends(require_roles("farmer", "admin")),
                  services: Services = Depends(get_services)):
    delivery, order = _load(delivery_id, services)
    authorize("delivery.manage", user, order, farmer=_farmer(user, services))

    current = delivery["status"]
    if body.status not in DELIVERY_TRANSITIONS.get(current, ()):
        raise InvalidTransition(f"Cannot change delivery status from {current} to {body.status}")

    updates = {"status": body.status, "updatedAt": utcnow()}
    if body.status == "delivered":
        updates["actualDeliveryTime"] = utcnow()
    updated = services.db["delivery"].find_one_and_update(
        {"id": delivery["id"], "status": current},
        {"$set": updates, "$push": {"history": _history(body.status, user, body.note)}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidTransition("Delivery status was changed by another request")

    target = ORDER_STATUS_FOR.get(body.status)
    if target and order["status"] in ORDER_FLOW and ORDER_FLOW.index(order["status"]) < ORDER_FLOW.index(target):
        services.orders.advance_status(order["id"], target, user, body.note or f"Delivery {body.status}")
    logger.info("Delivery %s moved %s -> %s", delivery["id"], current, body.status)
    return ok(updated, "Delivery status updated")


@router.put("/{delivery_id}/assign")
def assign_driver(delivery_id: str, body: AssignIn, user=Depends(require_roles("farmer", "admin")),
                  services: Services = Depends(get_services)):
    delivery, order = _load(delivery_id, services)
    authorize("delivery.manage", user, order, farmer=_farmer(user, services))
    updated = services.db["delivery"].find_one_and_update(
        {"id": delivery["id"], "status": {"$in": ["pending", "assigned", "failed"]}},
        {"$set": {"driver": body.driver.model_dump(), "status": "assigned",
                  "estimatedDeliveryTime": body.estimatedDeliveryTime, "updatedAt": utcnow()},
         "$push": {"history": _history("assigned", user, f"Driver {body.driver.name}")}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidTransition(f"Cannot assign a driver to a delivery that is {delivery['status']}")
    return ok(updated, "Driver assigned")


@router.post("/{delivery_id}/rate")
def rate_delivery(delivery_id: str, body: RatingIn, user=Depends(get_current_user),
                  services: Services = Depends(get_services)):
    delivery, order = _load(delivery_id, services)
    authorize("delivery.rate", user, order)
    rating = DeliveryRating(score=body.score, comment=body.comment, ratedAt=utcnow()).model_dump()
    updated = services.db["delivery"].find_one_and_update(
        {"id": delivery["id"], "status": "delivered", "rating": None},
        {"$set": {"rating": rating, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ValidationError("Only delivered, unrated deliveries can be rated")
    return ok(updated, "Thank you for your feedback")
