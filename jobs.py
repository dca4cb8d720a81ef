"""
Scheduled maintenance jobs.

Jobs run on an APScheduler BackgroundScheduler with cron triggers. A job that
is still running when its next trigger fires is skipped (`max_instances=1`,
`coalesce=True`); on-demand runs through `run()` take the same per-job lock
and are skipped while the job is busy.
"""

import logging
import threading
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

import notifications as templates
from database import utcnow
from errors import NotFound
from ratings import recompute_farmer_rating

logger = logging.getLogger(__name__)

SCHEDULE = {
    "cleanup-notifications": {"hour": 2, "minute": 0},
    "order-reminders": {"minute": 0},
    "stock-alerts": {"minute": "*/30"},
    "daily-reports": {"hour": 6, "minute": 0},
    "update-ratings": {"hour": 4, "minute": 0},
    "archive-orders": {"day": 1, "hour": 1, "minute": 0},
    "promotional-emails": {"day_of_week": "mon", "hour": 10, "minute": 0},
}

REPORT_TTL = 7 * 24 * 3600
PROMO_BATCH = 100


class JobRunner:
    def __init__(self, services):
        self.services = services
        self.scheduler: Optional[BackgroundScheduler] = None
        self._locks: Dict[str, threading.Lock] = {name: threading.Lock() for name in SCHEDULE}
        self._last_runs: Dict[str, dict] = {}
        self._jobs: Dict[str, Callable[[], dict]] = {
            "cleanup-notifications": self.cleanup_notifications,
            "order-reminders": self.order_reminders,
            "stock-alerts": self.stock_alerts,
            "daily-reports": self.daily_reports,
            "update-ratings": self.update_ratings,
            "archive-orders": self.archive_orders,
            "promotional-emails": self.promotional_emails,
        }

    @property
    def db(self):
        return self.services.db

    def start(self) -> None:
        tz = self.services.settings.scheduler_timezone
        self.scheduler = BackgroundScheduler(timezone=tz)
        for name, fields in SCHEDULE.items():
            self.scheduler.add_job(
                self.run, CronTrigger(timezone=tz, **fields), args=[name], id=name,
                max_instances=1, coalesce=True, replace_existing=True,
            )
        self.scheduler.start()
        logger.info("Scheduler started with %d jobs", len(SCHEDULE))

    def shutdown(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def run(self, name: str) -> dict:
        if name not in self._jobs:
            raise NotFound(f"Unknown job: {name}")
        lock = self._locks[name]
        if not lock.acquire(blocking=False):
            logger.info("Job %s is already running, skipping", name)
            return {"job": name, "skipped": True}

        started = utcnow()
        logger.info("Running job: %s", name)
        try:
            result = self._jobs[name]()
        except Exception:
            self._last_runs[name] = {"startedAt": started, "status": "failed"}
            logger.exception("Job failed: %s", name)
            raise
        finally:
            lock.release()
        self._last_runs[name] = {"startedAt": started, "finishedAt": utcnow(), "status": "ok", "result": result}
        logger.info("Job completed: %s %s", name, result)
        return {"job": name, "skipped": False, "result": result}

    def status(self) -> list:
        out = []
        for name in SCHEDULE:
            job = self.scheduler.get_job(name) if self.scheduler is not None else None
            out.append({
                "name": name,
                "scheduled": job is not None,
                "nextRunTime": job.next_run_time if job is not None else None,
                "running": self._locks[name].locked(),
                "lastRun": self._last_runs.get(name),
            })
        return out

    # ---- jobs ----

    def cleanup_notifications(self) -> dict:
        return {"deleted": self.services.notifier.cleanup_expired(days=30)}

    def order_reminders(self) -> dict:
        cutoff = utcnow() - timedelta(hours=24)
        sent = 0
        for order in self.db["order"].find({"status": "pending", "createdAt": {"$lt": cutoff},
                                            "reminderSentAt": None}):
            self.services.notifier.notify(order["customerId"], templates.order_reminder(order), send_email=True)
            self.db["order"].update_one({"id": order["id"]}, {"$set": {"reminderSentAt": utcnow()}})
            sent += 1
        return {"reminders": sent}

    def stock_alerts(self) -> dict:
        threshold = self.services.settings.low_stock_threshold
        products = list(self.db["product"].find({
            "isActive": True,
            "availability.inStock": True,
            "availability.quantity": {"$lt": threshold},
        }))
        farmer_ids = list({p["farmerId"] for p in products})
        owners = {f["id"]: f["userId"] for f in self.db["farmer"].find({"id": {"$in": farmer_ids}})}
        sent = 0
        for product in products:
            user_id = owners.get(product["farmerId"])
            if user_id and self.services.notifier.notify(user_id, templates.product_low_stock(product)):
                sent += 1
        return {"alerts": sent}

    def daily_reports(self, day: Optional[datetime] = None) -> dict:
        today = datetime.combine((day or utcnow()).date(), time.min, tzinfo=timezone.utc)
        yesterday = today - timedelta(days=1)
        window = {"$gte": yesterday, "$lt": today}

        orders = list(self.db["order"].find({"createdAt": window}))
        revenue = sum(o["pricing"]["total"] for o in orders if o["status"] != "cancelled")
        report = {
            "date": yesterday.date().isoformat(),
            "orders": len(orders),
            "cancelledOrders": sum(1 for o in orders if o["status"] == "cancelled"),
            "revenue": round(revenue, 2),
            "newUsers": self.db["user"].count_documents({"createdAt": window}),
        }
        if self.services.cache is not None:
            self.services.cache.set(f"daily_report:{report['date']}", report, ttl=REPORT_TTL)
        return report

    def update_ratings(self) -> dict:
        updated = 0
        for farmer in self.db["farmer"].find({}, {"id": 1}):
            recompute_farmer_rating(self.db, farmer["id"])
            updated += 1
        return {"farmers": updated}

    def archive_orders(self) -> dict:
        cutoff = utcnow() - timedelta(days=365)
        res = self.db["order"].update_many(
            {"status": {"$in": ["delivered", "cancelled"]}, "createdAt": {"$lt": cutoff}, "archived": {"$ne": True}},
            {"$set": {"archived": True, "archivedAt": utcnow()}},
        )
        return {"archived": res.modified_count}

    def _featured_promo(self) -> Optional[dict]:
        now = utcnow()
        return self.db["promocode"].find_one(
            {
                "isActive": True,
                "validFrom": {"$lte": now},
                "validUntil": {"$gte": now},
                "userRestrictions.specificUsers": {"$size": 0},
            },
            sort=[("validUntil", 1)],
        )

    def promotional_emails(self) -> dict:
        promo = self._featured_promo()
        if not promo:
            logger.info("No public promo code is active, skipping promotional emails")
            return {"sent": 0}

        since = utcnow() - timedelta(days=7)
        recent = self.db["order"].distinct("customerId", {"createdAt": {"$gte": since}})
        customers = list(self.db["user"].find(
            {"role": "customer", "isActive": True, "id": {"$nin": recent}},
        ).limit(PROMO_BATCH))

        settings = self.services.settings
        results = self.services.mailer.send_bulk(customers, "promotional_offer", lambda user: {
            "firstName": user.get("firstName"),
            "offerTitle": promo["name"],
            "description": promo.get("description") or "",
            "promoCode": promo["code"],
            "expiryDate": promo["validUntil"].date().isoformat(),
            "shopUrl": f"{settings.frontend_url}/products",
        })
        return {"sent": sum(1 for r in results if r.get("sent")), "recipients": len(results)}
