from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from deps import Services, get_services
from routers import ok
from schemas import Address, TimeSlot
from security import get_current_user, require_roles

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderLineIn(BaseModel):
    productId: str
    quantity: int = Field(..., ge=1)


class DeliveryIn(BaseModel):
    type: Literal["delivery", "pickup"]
    address: Optional[Address] = None
    pickupLocation: Optional[str] = None
    scheduledDate: datetime
    timeSlot: Optional[TimeSlot] = None


class PaymentIn(BaseModel):
    method: Literal["cash", "card", "online"]


class OrderIn(BaseModel):
    items: List[OrderLineIn] = Field(..., min_length=1)
    delivery: DeliveryIn
    payment: PaymentIn
    notes: Optional[str] = Field(None, max_length=500)
    promoCode: Optional[str] = None


class StatusIn(BaseModel):
    status: Literal["confirmed", "preparing", "ready", "in_transit", "delivered"]
    note: Optional[str] = Field(None, max_length=500)


class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.post("", status_code=201)
def create_order(body: OrderIn, user=Depends(require_roles("customer")), services: Services = Depends(get_services)):
    order = services.orders.place_order(
        user,
        [line.model_dump() for line in body.items],
        body.delivery.model_dump(),
        body.payment.model_dump(),
        notes={"customer": body.notes} if body.notes else None,
        promo_code=body.promoCode,
    )
    return ok(order, "Order created")


@router.get("/my-orders")
def my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), status: Optional[str] = None,
              user=Depends(get_current_user), services: Services = Depends(get_services)):
    items, pagination = services.orders.list_customer_orders(user, page, limit, status)
    return ok(items, pagination=pagination)


@router.get("/farmer-orders")
def farmer_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), status: Optional[str] = None,
                  user=Depends(require_roles("farmer")), services: Services = Depends(get_services)):
    items, pagination = services.orders.list_farmer_orders(user, page, limit, status)
    return ok(items, pagination=pagination)


@router.get("/stats")
def order_stats(period: Literal["week", "month", "quarter", "year"] = "month",
                user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(services.orders.order_stats(user, period))


@router.get("/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(services.orders.get_order(order_id, user))


@router.get("/{order_id}/qr")
def pickup_qr(order_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(services.orders.pickup_qr(order_id, user))


@router.put("/{order_id}/status")
def update_status(order_id: str, body: StatusIn, user=Depends(require_roles("farmer", "admin")),
                  services: Services = Depends(get_services)):
    order = services.orders.advance_status(order_id, body.status, user, body.note)
    return ok(order, "Order status updated")


@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelIn, user=Depends(get_current_user),
                 services: Services = Depends(get_services)):
    order = services.orders.cancel_order(order_id, user, body.reason)
    return ok(order, "Order cancelled")
