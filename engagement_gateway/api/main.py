"""FastAPI application factory"""

import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from engagement_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from engagement_gateway.api.v1 import contracts, payments
from engagement_gateway.domain.exceptions import DomainException, StorageUnavailableError
from engagement_gateway.infrastructure.observability.logging import setup_logging
from engagement_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Engagement Gateway",
        description="Tutoring contract signing and payment schedule service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logging.log(
            level,
            f"{exc.__class__.__name__}: {exc.message}",
            extra={"request_id": getattr(request.state, "request_id", "unknown"), "error_code": exc.code},
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": exc.message})

    @app.exception_handler(SQLAlchemyError)
    async def storage_exception_handler(request: Request, exc: SQLAlchemyError):
        # Storage details never leave the service
        logging.error(
            f"Storage error: {exc.__class__.__name__}",
            extra={"request_id": getattr(request.state, "request_id", "unknown")},
        )
        error = StorageUnavailableError()
        return JSONResponse(status_code=error.status_code, content={"error": error.code, "message": error.message})

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(contracts.router, prefix="/v1", tags=["contracts"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])

    return app


app = create_app()
