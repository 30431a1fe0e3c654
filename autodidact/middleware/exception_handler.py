"""Global exception handlers for the FastAPI application.

Every error leaves as ``{"error", "detail", "request_id"}`` JSON.  Stack
traces are logged server-side and never returned to the client.
"""

import logging
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from autodidact.errors import AutodidactError, GitHubAPIError, format_error_response

logger = logging.getLogger(__name__)


def _get_request_id(request: Request) -> str:
    """Request ID set by :class:`RequestIDMiddleware`, or a fresh UUID-4."""
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _json(status_code: int, request: Request, error: str, detail: object = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=format_error_response(
            error=error, detail=detail, request_id=_get_request_id(request),
        ),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all, returns 500."""
    logger.error(
        "Unhandled exception on %s %s [request_id=%s]",
        request.method, request.url.path, _get_request_id(request),
        exc_info=exc,
    )
    return _json(status.HTTP_500_INTERNAL_SERVER_ERROR, request, "Internal Server Error", "Internal server error")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """``HTTPException`` keeps its status code."""
    logger.warning(
        "HTTP %s on %s %s [request_id=%s]: %s",
        exc.status_code, request.method, request.url.path, _get_request_id(request), exc.detail,
    )
    detail = str(exc.detail) if exc.detail else None
    return _json(exc.status_code, request, detail or "Error", detail)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation errors, returns 422 with the error list."""
    errors = exc.errors()
    logger.warning(
        "Validation error on %s %s [request_id=%s]: %s",
        request.method, request.url.path, _get_request_id(request), errors,
    )
    return _json(
        status.HTTP_422_UNPROCESSABLE_ENTITY, request, "Validation failed",
        [{k: v for k, v in e.items() if k != "ctx"} for e in errors],
    )


async def domain_error_handler(request: Request, exc: AutodidactError) -> JSONResponse:
    """:class:`AutodidactError` subclasses carry their own status code."""
    if isinstance(exc, GitHubAPIError):
        logger.warning(
            "Upstream GitHub error on %s %s [request_id=%s]: %s",
            request.method, request.url.path, _get_request_id(request), exc,
        )
    return _json(exc.status_code, request, str(exc), str(exc))


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Plain ``ValueError`` from a service, returns 400."""
    return _json(status.HTTP_400_BAD_REQUEST, request, "Bad Request", str(exc))


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all global exception handlers on *app*."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(AutodidactError, domain_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, value_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, global_exception_handler)  # type: ignore[arg-type]
