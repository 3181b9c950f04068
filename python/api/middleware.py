"""
Middleware and error handlers for the scoring API

Every error leaves the API as {"error": {"code", "message", "timestamp"[, "field"]}}.
Store failures map to 503 when retrying later can help and 500 otherwise.
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from normalization import sanitize_for_logging
from store import StoreError, StoreUnavailableError, TransientStoreError

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]

# (exception type, code, message, status); first match wins
ERROR_MAP = [
    ((StoreUnavailableError, TransientStoreError), "STORE_UNAVAILABLE",
     "Score store is temporarily unavailable. Please try again later.", 503),
    (StoreError, "STORE_ERROR", "Score store request failed.", 500),
    (ConfigurationError, "CONFIGURATION_ERROR",
     "Service configuration is invalid. Please contact administrator.", 503),
]


def setup_cors(app: FastAPI) -> None:
    """Allow read-only cross-origin access.

    CORS_ORIGINS (comma-separated) replaces the localhost defaults.
    """
    configured = os.getenv("CORS_ORIGINS", "")
    origins = [o.strip() for o in configured.split(",") if o.strip()] or DEFAULT_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs it with its timing."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "✗ %s %s failed after %dms: %s [%s]",
                request.method,
                sanitize_for_logging(request.url.path),
                _elapsed_ms(started),
                sanitize_for_logging(str(exc)),
                request_id,
            )
            raise

        elapsed = _elapsed_ms(started)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed)
        logger.info(
            "%s %s -> %d in %dms [%s]",
            request.method,
            sanitize_for_logging(request.url.path),
            response.status_code,
            elapsed,
            request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
) -> JSONResponse:
    """
    Args:
        code: Machine-readable error code
        message: Human-readable message
        status_code: HTTP status code
        field: Offending parameter, when there is one
    """
    error = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if field:
        error["field"] = field
    return JSONResponse(status_code=status_code, content={"error": error})


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map store and configuration errors; hide everything else behind INTERNAL_ERROR."""
    logger.error(
        "Unhandled %s: %s [%s]",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        getattr(request.state, "request_id", "unknown"),
    )

    for types, code, message, status_code in ERROR_MAP:
        if isinstance(exc, types):
            return create_error_response(code, message, status_code)

    return create_error_response(
        "INTERNAL_ERROR",
        "An unexpected error occurred. Please try again later.",
        500,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning(
        "⚠ HTTP %d: %s [%s]",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        getattr(request.state, "request_id", "unknown"),
    )
    return create_error_response(f"HTTP_{exc.status_code}", str(exc.detail), exc.status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report the first bad path or query parameter."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = first.get("loc", ())
    return create_error_response(
        "VALIDATION_ERROR",
        first.get("msg", "Invalid request"),
        422,
        field=str(location[-1]) if location else None,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(StoreError, global_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
