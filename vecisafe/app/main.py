"""
FastAPI application entry point.

Run with:
    uvicorn vecisafe.app.main:app --reload --port 8000
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from vecisafe.app.container import Services, build_services
from vecisafe.app.core.config import settings
from vecisafe.app.core.errors import register_error_handlers
from vecisafe.app.core.health import HealthStatus, run_health_check
from vecisafe.app.core.logging_config import get_logger, setup_logging
from vecisafe.app.core.middleware import RequestLoggingMiddleware

# ── API routers ──
from vecisafe.app.api.v1.alerts import router as alert_router
from vecisafe.app.api.v1.sessions import router as session_router
from vecisafe.app.api.v1.subscriptions import router as subscription_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application; ``services`` defaults to ``build_services(settings)``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        app.state.services = services or build_services(settings)
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        await app.state.services.close()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Neighbourhood safety alerts. Devices hold anonymous or "
            "phone-verified sessions, report incidents at their location, "
            "and receive push notifications for incidents reported nearby."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)

    app.include_router(session_router)
    app.include_router(alert_router)
    app.include_router(subscription_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": ["sessions", "alerts", "subscriptions", "fanout"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe across all subsystems."""
        report = await run_health_check(request.app.state.services)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        report = await run_health_check(request.app.state.services)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
