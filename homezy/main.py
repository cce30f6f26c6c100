"""Main FastAPI application for the Homezy lead engine"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from homezy import __version__
from homezy.api import credits, health, leads, matching
from homezy.api.deps import get_app_notifier
from homezy.config import settings
from homezy.db.database import AsyncSessionLocal, close_db, init_db
from homezy.errors import LeadEngineError, UnavailableError, ValidationFailedError
from homezy.middleware.logging import LoggingMiddleware
from homezy.middleware.rate_limit import RateLimitMiddleware
from homezy.middleware.request_id import RequestIDMiddleware
from homezy.services.sweeper import SweeperRunner
from homezy.utils.logging import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    logger.info("Starting Homezy lead engine...")

    issues = settings.validate_configuration()
    for warning in issues["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if issues["errors"]:
        raise RuntimeError(f"Invalid configuration: {'; '.join(issues['errors'])}")

    await init_db()

    runner = None
    if settings.enable_sweeper:
        runner = SweeperRunner(AsyncSessionLocal, notifier=get_app_notifier())
        runner.start()

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down Homezy lead engine...")
    if runner is not None:
        await runner.stop()
    await close_db()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Homezy Lead Engine",
    description="""
    ## Lead lifecycle and credit-gated claims

    Homeowners post leads, professionals spend credits to claim them.

    ### Key Features
    - **Public leads** claimable by up to five professionals
    - **Direct leads** reserved for one professional for 24 hours, then released to the marketplace
    - **Credit ledger** with expiring free credits and non-expiring paid credits
    - **Match scores** from questionnaire answers for marketplace ranking
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.app_debug else None,
    redoc_url="/redoc" if settings.app_debug else None,
)

# Configure middleware (order matters - last added runs first)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=settings.rate_limit_per_minute,
    requests_per_hour=settings.rate_limit_per_hour,
    enable_rate_limiting=settings.app_env != "development",
)
app.add_middleware(RequestIDMiddleware)


@app.get("/status", response_class=JSONResponse)
async def api_status() -> dict[str, Any]:
    """API status endpoint for programmatic access"""
    return {
        "name": "Homezy Lead Engine",
        "version": __version__,
        "status": "operational",
        "docs": "/docs" if settings.app_debug else None,
    }


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(
    leads.router,
    prefix="/api/v1/leads",
    tags=["leads"]
)
app.include_router(
    credits.router,
    prefix="/api/v1/credits",
    tags=["credits"]
)
app.include_router(
    matching.router,
    prefix="/api/v1/matching",
    tags=["matching"]
)


@app.exception_handler(LeadEngineError)
async def lead_engine_error_handler(request: Request, exc: LeadEngineError):
    """Render typed business outcomes as structured error bodies"""
    logger.info(
        f"{exc.kind}: {exc.message}",
        extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = ValidationFailedError("Request validation failed")
    body = error.to_dict()
    # Raw pydantic errors may carry exception objects in ``ctx``
    body["details"] = {"errors": [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]}
    return JSONResponse(status_code=error.status_code, content=body)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    """The write may or may not have landed; callers retry idempotent operations"""
    logger.error(f"Database error: {exc}", exc_info=True)
    error = UnavailableError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal",
            "message": str(exc) if settings.app_debug else "An error occurred",
            "details": {},
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "homezy.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
        log_level=settings.log_level.lower(),
    )
