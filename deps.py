"""
Process-wide collaborators.

`Services` is built once at startup (or handed in by tests) and stored on
`app.state.services`; routers reach it through the `get_services` dependency.
"""

import logging
from typing import Optional

from fastapi import Request

import database
from cache import Cache
from config import Settings
from jobs import JobRunner
from mailer import Mailer
from notifications import ConnectionManager, NotificationService
from orders import OrderService
from payments import PaymentService, StripeGateway
from promos import PromoService
from ratings import ReviewService

logger = logging.getLogger(__name__)


class Services:
    def __init__(self, settings: Settings, db, cache: Optional[Cache] = None, mailer=None,
                 gateway=None, notifier: Optional[NotificationService] = None, client=None):
        self.settings = settings
        self.db = db
        self.cache = cache
        self.client = client
        self.mailer = mailer if mailer is not None else Mailer(settings)
        self.gateway = gateway if gateway is not None else StripeGateway(
            settings.stripe_secret_key, settings.stripe_webhook_secret
        )
        self.notifier = notifier if notifier is not None else NotificationService(
            db, ConnectionManager(), self.mailer
        )

        self.promos = PromoService(db)
        self.orders = OrderService(db, settings, notifier=self.notifier, mailer=self.mailer,
                                   promos=self.promos, cache=cache)
        self.payments = PaymentService(db, self.gateway, settings, notifier=self.notifier, cache=cache)
        self.reviews = ReviewService(db, notifier=self.notifier, cache=cache)
        self.jobs = JobRunner(self)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Services":
        client, db = database.connect(settings)
        database.ensure_indexes(db)
        cache = Cache.from_url(settings.redis_url, settings.cache_ttl_seconds) if settings.redis_url else None
        if cache is not None and not cache.ping():
            logger.warning("Redis at %s is not reachable, running without cache", settings.redis_url)
        return cls(settings, db, cache=cache, client=client)

    def start_jobs(self) -> None:
        self.jobs.start()

    def close(self) -> None:
        self.jobs.shutdown()
        if self.cache is not None:
            self.cache.close()
        database.close(self.client)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_db(request: Request):
    return request.app.state.services.db
