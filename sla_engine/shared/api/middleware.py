"""
Shared API Middleware
======================

Request tracing, request logging and the exception handlers that map the
engine's error taxonomy onto HTTP responses.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sla_engine.config import settings
from sla_engine.core.exceptions import (
    ApplicationException,
    ResourceNotFoundException,
    ValidationException,
)
from sla_engine.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Adds a correlation ID to every request.

    The id is taken from ``X-Correlation-ID`` when the caller sends one and
    echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with its tenant, status code and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = getattr(request.state, "correlation_id", "unknown")
        tenant_id = request.headers.get(settings.tenant_header)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={
                    "correlation_id": correlation_id,
                    "tenant_id": tenant_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "response_time_ms": int((time.perf_counter() - start_time) * 1000)
                }
            )
            raise

        logger.info(
            "Request completed",
            extra={
                "correlation_id": correlation_id,
                "tenant_id": tenant_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "response_time_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        return response


def _error_body(request: Request, detail: str, **fields) -> dict:
    return {
        "detail": detail,
        "correlation_id": getattr(request.state, "correlation_id", None),
        **fields,
    }


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Reshape FastAPI's 422 body into ``400 {"errors": [{field, message}]}``.

    The field is the dotted location without the leading ``body``/``query``.
    """
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        errors.append({"field": ".".join(loc) or "request", "message": error.get("msg", "invalid")})

    return JSONResponse(
        status_code=400,
        content=_error_body(request, "Validation failed", errors=errors),
    )


async def validation_exception_handler(request: Request, exc: ValidationException) -> JSONResponse:
    """Map ValidationException to 400 with its field errors."""
    return JSONResponse(
        status_code=400,
        content=_error_body(request, exc.message, errors=exc.errors),
    )


async def not_found_exception_handler(request: Request, exc: ResourceNotFoundException) -> JSONResponse:
    """Map ResourceNotFoundException to 404."""
    return JSONResponse(status_code=404, content=_error_body(request, exc.message))


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Any other ApplicationException is a server-side failure."""
    logger.error(
        "Application error",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", None),
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "error_message": exc.message,
        }
    )
    return JSONResponse(status_code=500, content=_error_body(request, exc.message))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Returns a consistent 500 body carrying the correlation id.
    """
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        }
    )

    is_dev = settings.environment == "development"

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None
        }
    )


def register_exception_handlers(app) -> None:
    """Attach the engine's exception handlers to a FastAPI app."""
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValidationException, validation_exception_handler)
    app.add_exception_handler(ResourceNotFoundException, not_found_exception_handler)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
