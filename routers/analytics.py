from collections import Counter, defaultdict
from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from database import as_utc, utcnow
from deps import Services, get_services
from routers import ok
from security import require_roles

router = APIRouter(prefix="/analytics", tags=["analytics"])


def _cached(services: Services, key: str, build):
    if services.cache is not None:
        hit = services.cache.get(key)
        if hit is not None:
            return hit
    value = build()
    if services.cache is not None:
        services.cache.set(key, value, ttl=services.settings.cache_ttl_seconds)
    return value


def _overview(services: Services) -> dict:
    db = services.db
    users_by_role = Counter(u["role"] for u in db["user"].find({"isActive": True}, {"role": 1}))
    orders = list(db["order"].find({}, {"status": 1, "pricing": 1}))
    orders_by_status = Counter(o["status"] for o in orders)
    return {
        "users": {"total": sum(users_by_role.values()), "byRole": dict(users_by_role)},
        "farmers": {
            "total": db["farmer"].count_documents({"isActive": True}),
            "verified": db["farmer"].count_documents({"isActive": True, "isVerified": True}),
        },
        "products": {
            "total": db["product"].count_documents({"isActive": True}),
            "outOfStock": db["product"].count_documents({"isActive": True, "availability.inStock": False}),
        },
        "orders": {"total": len(orders), "byStatus": dict(orders_by_status)},
        "revenue": round(sum(o["pricing"]["total"] for o in orders if o["status"] != "cancelled"), 2),
        "pendingPayments": db["payment"].count_documents({"status": {"$in": ["pending", "processing"]}}),
    }


def _sales(services: Services, days: int) -> list:
    since = utcnow() - timedelta(days=days)
    by_day = defaultdict(lambda: {"orders": 0, "revenue": 0.0})
    for order in services.db["order"].find({"status": {"$ne": "cancelled"}}, {"createdAt": 1, "pricing": 1}):
        created = as_utc(order["createdAt"])
        if created < since:
            continue
        day = by_day[created.date().isoformat()]
        day["orders"] += 1
        day["revenue"] = round(day["revenue"] + order["pricing"]["total"], 2)
    return [{"date": date, **values} for date, values in sorted(by_day.items())]


@router.get("/dashboard")
def dashboard(admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return ok(_cached(services, "analytics:dashboard", lambda: _overview(services)))


@router.get("/sales")
def sales(days: int = Query(30, ge=1, le=366), admin=Depends(require_roles("admin")),
          services: Services = Depends(get_services)):
    return ok(_cached(services, f"analytics:sales:{days}", lambda: _sales(services, days)))


@router.get("/top-products")
def top_products(limit: int = Query(10, ge=1, le=50), admin=Depends(require_roles("admin")),
                 services: Services = Depends(get_services)):
    def build():
        cursor = services.db["product"].find({"isActive": True}).sort([("totalSold", -1)]).limit(limit)
        return [
            {"id": p["id"], "name": p["name"], "farmerId": p["farmerId"], "totalSold": p.get("totalSold", 0),
             "rating": p.get("rating")}
            for p in cursor
        ]
    return ok(_cached(services, f"analytics:top-products:{limit}", build))


@router.get("/jobs")
def job_status(admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return ok(services.jobs.status())


@router.post("/jobs/{name}/run")
def run_job(name: str, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return ok(services.jobs.run(name))
