from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from deps import Services, get_services
from routers import ok
from schemas import UsageLimit, UserRestrictions
from security import get_current_user, require_roles

router = APIRouter(prefix="/promo-codes", tags=["promo-codes"])


class ValidateLineIn(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    farmerId: Optional[str] = None
    categoryId: Optional[str] = None


class ValidateIn(BaseModel):
    code: str
    orderAmount: float = Field(..., ge=0)
    items: Optional[List[ValidateLineIn]] = None


class PromoCodeIn(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None
    type: Literal["percentage", "fixed_amount", "free_shipping"]
    value: float = Field(..., ge=0)
    minOrderAmount: float = Field(0, ge=0)
    maxDiscountAmount: Optional[float] = Field(None, ge=0)
    usageLimit: UsageLimit = Field(default_factory=UsageLimit)
    validFrom: datetime
    validUntil: datetime
    applicableCategories: List[str] = Field(default_factory=list)
    applicableProducts: List[str] = Field(default_factory=list)
    applicableFarmers: List[str] = Field(default_factory=list)
    excludedCategories: List[str] = Field(default_factory=list)
    excludedProducts: List[str] = Field(default_factory=list)
    userRestrictions: UserRestrictions = Field(default_factory=UserRestrictions)
    isActive: bool = True


class PromoCodeUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = None
    value: Optional[float] = Field(None, ge=0)
    minOrderAmount: Optional[float] = Field(None, ge=0)
    maxDiscountAmount: Optional[float] = Field(None, ge=0)
    usageLimit: Optional[UsageLimit] = None
    validFrom: Optional[datetime] = None
    validUntil: Optional[datetime] = None
    applicableCategories: Optional[List[str]] = None
    applicableProducts: Optional[List[str]] = None
    applicableFarmers: Optional[List[str]] = None
    excludedCategories: Optional[List[str]] = None
    excludedProducts: Optional[List[str]] = None
    userRestrictions: Optional[UserRestrictions] = None
    isActive: Optional[bool] = None


def public_promo(promo: dict) -> dict:
    keys = ("code", "name", "description", "type", "value", "minOrderAmount", "maxDiscountAmount", "validUntil")
    return {k: promo.get(k) for k in keys}


@router.post("/validate")
def validate_code(body: ValidateIn, user=Depends(get_current_user), services: Services = Depends(get_services)):
    items = None
    if body.items:
        items = [{**line.model_dump(), "total": round(line.price * line.quantity, 2)} for line in body.items]
    evaluation = services.promos.evaluate(body.code, user["id"], body.orderAmount, items=items)
    return ok({
        "promoCode": public_promo(evaluation.promo),
        "discount": evaluation.discount,
        "freeShipping": evaluation.free_shipping,
        "eligibleAmount": evaluation.eligible_amount,
    }, "Promo code is valid")


@router.get("/code/{code}")
def get_by_code(code: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(public_promo(services.promos.get_by_code(code)))


@router.get("")
def list_promos(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                isActive: Optional[bool] = None, search: Optional[str] = None,
                admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    items, pagination = services.promos.list_promos(page, limit, isActive, search)
    return ok(items, pagination=pagination)


@router.post("", status_code=201)
def create_promo(body: PromoCodeIn, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return ok(services.promos.create(body.model_dump(), created_by=admin["id"]), "Promo code created")


@router.put("/{promo_id}")
def update_promo(promo_id: str, body: PromoCodeUpdateIn, admin=Depends(require_roles("admin")),
                 services: Services = Depends(get_services)):
    return ok(services.promos.update(promo_id, body.model_dump(exclude_unset=True)), "Promo code updated")


@router.delete("/{promo_id}")
def delete_promo(promo_id: str, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    services.promos.delete(promo_id)
    return ok(message="Promo code deleted")


@router.get("/{promo_id}/stats")
def promo_stats(promo_id: str, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return ok(services.promos.stats(promo_id))
