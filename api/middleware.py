"""
FastAPI Middleware for the Minutebook API

Provides CORS configuration, request logging, and error handling that
maps domain errors onto the standardized error envelope.
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from database.errors import (
    ConflictError,
    DomainError,
    InsufficientSharesError,
    NotFoundError,
    SelfReferenceError,
    ValidationError,
)
from security_logger import get_security_logger, sanitize_for_logging

logger = logging.getLogger(__name__)


def setup_cors(app: FastAPI, default_origins: List[str]) -> None:
    """Configure CORS middleware for the application.

    Origins come from config (api.cors_origins) and can be overridden via
    the CORS_ORIGINS environment variable (comma-separated list).
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    else:
        allowed_origins = default_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time

        # Sanitize path to prevent log injection
        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            request_id,
        )

        try:
            response = await call_next(request)

            processing_time_ms = int((time.time() - start_time) * 1000)
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

            logger.info(
                "Response: status=%d processing_time_ms=%d request_id=%s",
                response.status_code,
                processing_time_ms,
                request_id,
            )
            return response

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise

        finally:
            get_security_logger().clear_request_context()


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error_detail})


def status_for(exc: DomainError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    return 400


async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map service-layer errors to HTTP responses.

    Ledger integrity refusals (self-shareholding, overdrawn transfers) are
    also written to the security log.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = status_for(exc)

    logger.warning(
        "Domain error: code=%s status=%d message=%s request_id=%s",
        exc.code,
        status_code,
        sanitize_for_logging(exc.message),
        request_id,
    )

    if isinstance(exc, (InsufficientSharesError, SelfReferenceError)):
        context = {}
        if isinstance(exc, InsufficientSharesError):
            context = {"requested": exc.requested, "available": exc.available}
        get_security_logger().log_ledger_rejection(
            error_code=exc.code,
            org_id=str(request.path_params.get("org_id", "")),
            actor_id=getattr(request.state, "actor_id", ""),
            source=sanitize_for_logging(request.url.path),
            additional_context=context,
        )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        suggestion=exc.suggestion,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Pydantic request validation failures, reported on the first bad field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location) or None

    get_security_logger().log_validation_failure(
        field=field or "",
        error_code="REQUEST_VALIDATION",
        input_value=str(first.get("input", ""))[:100],
        source=sanitize_for_logging(request.url.path),
    )

    return create_error_response(
        code="VALIDATION_ERROR",
        message=first.get("msg", "Invalid request"),
        status_code=422,
        field=field,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    from config_manager import ConfigurationError

    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(DomainError, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
