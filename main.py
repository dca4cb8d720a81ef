import os
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as ModelValidationError
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from deps import Services
from errors import AppError, Conflict, RateLimited, Unauthorized, field_errors
from routers import (
    analytics, auth, cart, categories, deliveries, farmers, notifications, orders, payments,
    pickup_points, products, promo_codes, reviews, users, wishlist,
)
from security import user_from_token

logger = logging.getLogger("farmmarket")

API_PREFIX = "/api/v1"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# ------------------------- Error handlers -------------------------

def error_response(status_code: int, message: str, errors=None) -> JSONResponse:
    body = {"status": "error", "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Validation failed", field_errors(exc.errors()))

    @app.exception_handler(ModelValidationError)
    async def model_validation_handler(request: Request, exc: ModelValidationError):
        return error_response(400, "Validation failed", field_errors(exc.errors()))

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        return JSONResponse(status_code=409, content=Conflict().to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error")


# ------------------------- App factory -------------------------

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()
    owns_services = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = Services.from_settings(settings)
        if settings.scheduler_enabled:
            app.state.services.start_jobs()
        yield
        if owns_services:
            app.state.services.close()
        else:
            app.state.services.jobs.shutdown()

    app = FastAPI(title="FarmMarket API", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        cache = app.state.services.cache if app.state.services is not None else None
        if cache is not None and request.url.path.startswith("/api/"):
            window = settings.rate_limit_window_seconds
            client = request.client.host if request.client else "unknown"
            key = f"ratelimit:{client}:{int(time.time() // window)}"
            count = await run_in_threadpool(cache.hit, key, window)
            if count is not None and count > settings.rate_limit_max_requests:
                logger.warning("Rate limit exceeded for %s", client)
                return JSONResponse(status_code=429, content=RateLimited().to_dict())
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code,
                    (time.perf_counter() - started) * 1000)
        return response

    for module in (auth, users, farmers, categories, products, cart, wishlist, orders, payments,
                   promo_codes, reviews, notifications, deliveries, pickup_points, analytics):
        app.include_router(module.router, prefix=API_PREFIX)

    # ---- Webhooks ----

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request):
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        return await run_in_threadpool(
            app.state.services.payments.handle_webhook, payload, signature
        )

    # ---- Real-time notifications ----

    @app.websocket("/ws/notifications")
    async def notifications_socket(websocket: WebSocket, token: Optional[str] = None):
        services = websocket.app.state.services
        try:
            user = await run_in_threadpool(user_from_token, token, services)
        except Unauthorized:
            await websocket.close(code=1008)
            return
        manager = services.notifier.connections
        await manager.connect(user["id"], websocket)
        try:
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            manager.disconnect(user["id"], websocket)

    # ---- Root and health ----

    @app.get("/")
    def read_root():
        return {"message": "FarmMarket API running"}

    @app.get("/test")
    def test_database():
        response = {"backend": "✅ Running", "database": "❌ Not Available", "cache": "➖ Disabled"}
        services = app.state.services
        try:
            if services is not None and services.db is not None:
                services.db.list_collection_names()
                response["database"] = "✅ Connected"
        except Exception as e:
            response["database"] = f"⚠️ {str(e)[:80]}"
        if services is not None and services.cache is not None:
            response["cache"] = "✅ Connected" if services.cache.ping() else "❌ Not Available"
        return response

    return app


def build_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


app = build_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
