from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from deps import Services, get_services
from routers import ok
from security import get_current_user, require_roles

router = APIRouter(prefix="/payments", tags=["payments"])


class IntentIn(BaseModel):
    orderId: str


class OfflinePaymentIn(BaseModel):
    orderId: str
    method: Literal["cash", "bank_transfer"] = "cash"


class PaymentStatusIn(BaseModel):
    status: Literal["processing", "succeeded", "failed", "cancelled"]


class RefundIn(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)


@router.get("")
def list_payments(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), status: Optional[str] = None,
                  user=Depends(get_current_user), services: Services = Depends(get_services)):
    items, pagination = services.payments.list_payments(user, page, limit, status)
    return ok(items, pagination=pagination)


@router.get("/stats")
def payment_stats(days: int = Query(30, ge=1, le=366), admin=Depends(require_roles("admin")),
                  services: Services = Depends(get_services)):
    return ok(services.payments.payment_stats(days))


@router.get("/{payment_id}")
def get_payment(payment_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(services.payments.get_payment(payment_id, user))


@router.post("/intent", status_code=201)
def create_intent(body: IntentIn, user=Depends(require_roles("customer")), services: Services = Depends(get_services)):
    return ok(services.payments.create_intent(body.orderId, user), "Payment intent created")


@router.post("", status_code=201)
def create_offline_payment(body: OfflinePaymentIn, user=Depends(require_roles("customer")),
                           services: Services = Depends(get_services)):
    payment = services.payments.create_offline_payment(body.orderId, user, body.method)
    return ok(payment, "Payment created")


@router.put("/{payment_id}/status")
def update_status(payment_id: str, body: PaymentStatusIn, admin=Depends(require_roles("admin")),
                  services: Services = Depends(get_services)):
    return ok(services.payments.update_status(payment_id, body.status, admin), "Payment updated")


@router.post("/{payment_id}/refund")
def refund(payment_id: str, body: RefundIn, admin=Depends(require_roles("admin")),
           services: Services = Depends(get_services)):
    payment = services.payments.refund(payment_id, admin, amount=body.amount, reason=body.reason)
    return ok(payment, "Refund processed")
