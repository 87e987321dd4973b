"""
FastAPI application factory with middleware, CORS, and request tracing.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from steadybooks import __version__
from steadybooks.config import get_settings
from steadybooks.dependencies import Services, build_services
from steadybooks.routers import connection, quickbooks, webhooks
from steadybooks.storage import get_storage
from steadybooks.utils.logging import configure_logging, get_logger

# Configure logging at module level
configure_logging()
logger = get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Application factory.
    Creates and configures FastAPI application instance.

    Args:
        services: Prebuilt components (tests); built from settings at startup if omitted
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.
        Builds shared components on startup and releases them on shutdown.
        """
        owned = services is None
        app.state.services = services or build_services(settings, get_storage())

        logger.info(
            "application_startup",
            version=app.version,
            environment=settings.intuit_env,
            dev_mode=settings.dev_mode,
        )

        yield

        if owned:
            await app.state.services.aclose()
        logger.info("application_shutdown")

    app = FastAPI(
        title="SteadyBooks API",
        description="QuickBooks dashboard sync and Stripe billing reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Request tracing middleware
    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID to all requests and log their outcome."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )

            return response
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "version": app.version,
            "environment": settings.intuit_env,
        }

    # Include routers
    app.include_router(quickbooks.router, prefix="/api/v1/quickbooks", tags=["QuickBooks"])
    app.include_router(connection.router, prefix="/api/v1/connection", tags=["Connection"])
    app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])

    logger.info("application_configured", routers_count=3)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "steadybooks.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
