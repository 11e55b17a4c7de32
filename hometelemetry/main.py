# hometelemetry/main.py

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hometelemetry.core.config import settings
from hometelemetry.api import energy, ingest, sensors, water
from hometelemetry.services.container import build_services, get_services, set_services

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Home Telemetry API",
    version="1.0.0",
    description="Sensor, energy and water readings for one household",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"422 ValidationError on {request.method} {request.url.path} errors={exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.errors(),
            "path": str(request.url.path),
            "method": request.method,
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception on {request.method} {request.url}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "path": str(request.url.path),
            "method": request.method,
            "error": str(exc) if settings.DEBUG else None,
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(sensors.router, prefix="/api", tags=["sensors"])
app.include_router(ingest.router, prefix="/api", tags=["ingest"])
app.include_router(energy.router, prefix="/api", tags=["energy"])
app.include_router(water.router, prefix="/api", tags=["water"])


# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def on_startup():
    logger.info("Starting Home Telemetry API...")
    services = await build_services(settings)
    set_services(services)

    try:
        services.scheduler.start()
    except Exception as e:
        logger.warning(f"Scheduler not started: {e}")

    logger.info(
        f"Startup complete. ENV={settings.ENVIRONMENT} providers={services.scheduler.providers} "
        f"mirror={services.mirror.__class__.__name__}"
    )


@app.on_event("shutdown")
async def on_shutdown():
    try:
        services = get_services()
    except RuntimeError:
        return
    try:
        await services.close()
    except Exception as e:
        logger.warning(f"Error during shutdown: {e}")
    set_services(None)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Root / Health
# ---------------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "message": "Home Telemetry API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if settings.DEBUG else None,
    }


@app.get("/health")
async def health_check():
    try:
        services = get_services()
    except RuntimeError:
        return {"status": "starting", "timestamp": datetime.now(timezone.utc).isoformat()}

    providers = {
        name: services.scheduler.status[name]["health"] for name in services.scheduler.providers
    }
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.ENVIRONMENT,
        "services": {
            "providers": providers,
            "mirror": "enabled" if services.mirror.enabled else "disabled",
        },
    }
