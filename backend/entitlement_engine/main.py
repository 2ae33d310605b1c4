"""
Main FastAPI application.

WHY: This is the entry point for the application. It configures CORS,
routes, exception handlers and the background scheduler.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from entitlement_engine.core.config import settings
from entitlement_engine.core.exceptions import AppException
from entitlement_engine.core.exception_handlers import (
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    generic_exception_handler,
)
from entitlement_engine.api import billing
from entitlement_engine.services.plan_catalog import get_plan_catalog
from entitlement_engine.services.scheduler import start_scheduler, shutdown_scheduler, get_scheduler_status


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Subscription reconciliation and entitlement API",
        version=settings.VERSION,
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    )

    # Register exception handlers
    # WHY: Consistent error responses without leaking sensitive context
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Configure CORS
    # WHY: The billing UI calls status, preview and verification endpoints
    # from the browser.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Load balancers need a cheap liveness probe; the scheduler block
        shows whether the reconciliation sweep is scheduled.
        """
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "stripe_configured": settings.stripe_configured,
            "scheduler": get_scheduler_status(),
        }

    @app.on_event("startup")
    async def startup_event():
        """
        Application startup event handler.

        WHY: Loads the plan catalog eagerly so a broken plans.json fails the
        deploy instead of the first webhook, then starts the sweep scheduler.
        """
        get_plan_catalog()
        await start_scheduler()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Gracefully stops background jobs."""
        await shutdown_scheduler()

    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": f"{settings.API_V1_PREFIX}/docs",
        }

    app.include_router(billing.router, prefix=settings.API_V1_PREFIX)
    app.include_router(billing.webhooks_router, prefix=settings.API_V1_PREFIX)

    return app


# Create app instance
# WHY: Allows `uvicorn entitlement_engine.main:app`
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "entitlement_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
    )
