"""
Virtual Gifts Checkout Server
=============================
FastAPI server for the order/payment core:
- Orders: purchase, confirmation, retry, cancel, status
- Payments: method listing, processor webhooks, refunds
- Carts
- Health monitoring (/health, /ready, /live)

pip install fastapi uvicorn pydantic structlog asyncpg httpx stripe passlib
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.container import AppServices, build_services
from api.routes import cart_router, orders_router, payment_router
from database import Database, close_database, init_database
from errors import (
    ClientError,
    CommerceError,
    ConflictError,
    GatewayError,
    IntegrityError,
    NotFoundError,
)
from tasks.stock_sweep import stock_sweep_loop


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # postgres | memory
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "postgres")


config = ServerConfig()

VERSION = "1.0.0"


# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True) if config.DEBUG else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# ERROR MAPPING
# =============================================================================

# Most specific first
STATUS_CODES = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (ClientError, 400),
    (GatewayError, 502),
    (IntegrityError, 422),
)


def status_for(error: CommerceError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


async def commerce_error_handler(request: Request, exc: CommerceError):
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log("request_failed", path=request.url.path, status=status_code, code=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("request_crashed", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"detail": "Could not complete operation"})


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str
    database_connected: bool
    gateways: list


START_TIME = datetime.now(timezone.utc)


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(services: Optional[AppServices] = None, run_background_tasks: bool = True) -> FastAPI:
    """
    Build the app. Passing `services` skips database setup (tests, tooling).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=config.ENV, storage=config.STORAGE_BACKEND)

        owns_services = services is None
        if owns_services:
            if config.STORAGE_BACKEND == "postgres":
                await init_database()
            app.state.services = build_services(config.STORAGE_BACKEND)

        sweep_task = None
        if run_background_tasks and owns_services:
            sweep_task = asyncio.create_task(
                stock_sweep_loop(app.state.services.stock, app.state.services.events)
            )

        yield

        logger.info("server_shutting_down")
        if sweep_task is not None:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task
        if owns_services:
            await app.state.services.close()
            if config.STORAGE_BACKEND == "postgres":
                await close_database()

    app = FastAPI(
        title="Virtual Gifts Checkout",
        description="Order and payment orchestration for the Virtual Gifts store",
        version=VERSION,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(CommerceError, commerce_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"detail": errors, "code": "validation_error"})

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
        current: AppServices = request.app.state.services
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            storage_backend="postgres" if current.uses_database else "memory",
            database_connected=Database.is_connected(),
            gateways=sorted(current.payments.gateways),
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness probe"""
        current: AppServices = request.app.state.services
        ready = Database.is_connected() if current.uses_database else True
        if not ready:
            return JSONResponse(status_code=503, content={"ready": False})
        return {"ready": True}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    app.include_router(orders_router)
    app.include_router(payment_router)
    app.include_router(cart_router)

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
