"""Error handling middleware for consistent JSON error responses.

All errors are converted to a consistent JSON structure with:
- error: Stable machine-readable code
- message: Human-readable description
- detail: Optional additional information
- request_id: Correlation ID for debugging

Possession domain errors keep their own ``code`` as the ``error`` value, so
clients can rely on it across releases.
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from possession.api.middleware.request_id import get_request_id
from possession.services.collaborators import CollaboratorError
from possession.services.errors import (
    CodeAllocationExhaustedError,
    ConflictingConcurrentUpdateError,
    DuplicateActivePossessionError,
    IllegalTransitionError,
    PossessionError,
    PossessionNotFoundError,
    ValidationFailedError,
)
from possession.services.storage import StorageError

logger = logging.getLogger(__name__)

# HTTP status per domain error
DOMAIN_ERROR_STATUS: dict[type[PossessionError], int] = {
    PossessionNotFoundError: 404,
    IllegalTransitionError: 409,
    DuplicateActivePossessionError: 409,
    ConflictingConcurrentUpdateError: 409,
    ValidationFailedError: 422,
    CodeAllocationExhaustedError: 503,
}


class APIError(Exception):
    """Base exception for API errors with structured details.

    Use this exception to raise errors with consistent formatting.
    Subclass for specific error categories.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            error: Machine-readable error code (e.g., "validation_error").
            message: Human-readable error description.
            status_code: HTTP status code to return.
            detail: Optional additional details for debugging.
        """
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class ValidationAPIError(APIError):
    """Request validation error (400)."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            error="validation_error",
            message=message,
            status_code=400,
            detail=detail,
        )


class AuthenticationError(APIError):
    """Authentication error (401)."""

    def __init__(
        self, message: str = "Authentication required", detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(
            error="unauthorized",
            message=message,
            status_code=401,
            detail=detail,
        )


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build a standardized error response.

    Args:
        error: Machine-readable error code.
        message: Human-readable description.
        status_code: HTTP status code.
        detail: Optional additional details.

    Returns:
        JSONResponse with consistent error structure.
    """
    body: dict[str, Any] = {
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body)


def domain_error_response(exc: PossessionError) -> JSONResponse:
    """Translate a possession domain error to its HTTP response."""
    status_code = DOMAIN_ERROR_STATUS.get(type(exc), 400)
    return build_error_response(
        error=exc.code,
        message=exc.message,
        status_code=status_code,
        detail=exc.to_detail(),
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware that catches exceptions and returns consistent JSON errors.

    Handles:
    - PossessionError subclasses: domain failures with stable codes
    - APIError and subclasses: Custom application errors
    - HTTPException: FastAPI's built-in HTTP errors
    - ValidationError: Pydantic validation failures
    - TimeoutError: operation deadline exceeded (504)
    - CollaboratorError, StorageError: upstream failures (502)
    - Generic exceptions: Unexpected errors (logged, returns 500)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        """Process request and handle any exceptions.

        Args:
            request: The incoming HTTP request.
            call_next: The next middleware/handler in the chain.

        Returns:
            The response, or an error response if an exception occurred.
        """
        try:
            return await call_next(request)
        except PossessionError as exc:
            return domain_error_response(exc)
        except APIError as exc:
            return build_error_response(
                error=exc.error,
                message=exc.message,
                status_code=exc.status_code,
                detail=exc.detail,
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
            )
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors(include_url=False, include_context=False)},
            )
        except TimeoutError:
            logger.warning(
                "Request deadline exceeded: %s %s", request.method, request.url.path
            )
            return build_error_response(
                error="deadline_exceeded",
                message="The operation did not complete before its deadline",
                status_code=504,
            )
        except (CollaboratorError, StorageError) as exc:
            logger.warning(
                "Upstream failure on %s %s: %s", request.method, request.url.path, exc
            )
            return build_error_response(
                error="upstream_unavailable",
                message=str(exc),
                status_code=502,
            )
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
