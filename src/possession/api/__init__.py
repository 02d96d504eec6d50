"""Possession Engine API service.

FastAPI application providing:
- The possessions HTTP API (lifecycle, handover gate, reporting)
- Consistent JSON error responses with stable error codes
- Request ID propagation for log correlation

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from possession.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from possession.api.middleware.errors import build_error_response
from possession.api.routers import possessions_router
from possession.db import close_engine
from possession.services.collaborators import Collaborators
from possession.services.storage import DocumentStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi.responses import JSONResponse

    from possession.core.config import Settings

logger = logging.getLogger(__name__)

# Application metadata
API_DESCRIPTION = """
Plot possession lifecycle service.

## Namespaces

- **/api/possessions/** - Possession records, status transitions, handover
  readiness, letter collection, documents and reports

Mutating endpoints require an `X-Actor-ID` header.

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
- ReDoc: `/api/redoc`
"""


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    This factory function creates a fully configured FastAPI app with:
    - The possessions router mounted under /api
    - Collaborator clients and the document store in app state
    - Request ID middleware for distributed tracing
    - Error handling middleware for consistent JSON responses
    - CORS middleware (configurable via settings)
    - OpenAPI documentation at /api/docs and /api/redoc

    Args:
        settings: Optional Settings instance. If not provided, settings are
            loaded from the environment. Pass explicit settings for testing.

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        # Basic usage
        app = create_app()

        # For testing
        test_settings = Settings(environment="dev", database={"url": "sqlite:///:memory:"})
        app = create_app(test_settings)
    """
    if settings is None:
        from possession.core.settings import get_settings

        settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.collaborators.aclose()
        await close_engine()
        logger.info("Possession API shut down")

    app = FastAPI(
        title=settings.app_name,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Store settings and long-lived clients in app state for access in routes
    app.state.settings = settings
    app.state.collaborators = Collaborators.from_settings(settings.collaborators)
    app.state.document_store = DocumentStore.from_settings(settings.s3)

    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    _add_middleware(app, settings)
    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration.

        Returns:
            Status dictionary indicating the service is healthy.
        """
        return {"status": "healthy"}

    logger.info(
        "Possession API application created (version=%s)",
        settings.app_version,
        extra={"config": settings.get_config_snapshot()},
    )

    return app


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed requests with the same shape as domain validation."""
    fields: dict[str, Any] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        fields[".".join(location) or "request"] = error.get("msg", "Invalid value")
    return build_error_response(
        error="validation_failed",
        message="Validation failed",
        status_code=422,
        detail={"fields": fields},
    )


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    """Add middleware to the application.

    Starlette wraps each added middleware around the previous ones, so the
    request ID is bound before errors are rendered.

    Args:
        app: The FastAPI application instance.
        settings: Settings for middleware configuration.
    """
    # Error handler middleware - converts exceptions to JSON responses
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID middleware - adds X-Request-ID to all responses
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = ["http://localhost:3000", "http://localhost:8000"]
    if settings.is_production:
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _include_routers(app: FastAPI) -> None:
    """Include API namespace routers.

    Args:
        app: The FastAPI application instance.
    """
    app.include_router(possessions_router, prefix="/api")
