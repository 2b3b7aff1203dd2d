"""
Exception handlers mapping gateway errors to HTTP responses.

Response shapes:
- ClientInputError        -> 400 {"error": kind, "message": ...}
- ValidationFailedError   -> 400 {"error": "validation_failed", "message", "details": [...]}
- NotFoundError           -> 404 {"error": "not_found", "message": ...}
- StoreError / unhandled  -> 500 {"error": "internal_error", "message": "Internal Server Error"}

Store internals are logged, never returned. A ``stack`` field is added to
500 responses only in the development environment.
"""

import logging
import traceback

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from datagate.core.config import settings
from datagate.core.errors import (
    ClientInputError,
    FieldError,
    NotFoundError,
    StoreError,
    ValidationFailedError,
)
from datagate.core.logging_config import log_with_context

logger = logging.getLogger(__name__)


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


async def client_input_error_handler(request: Request, exc: ClientInputError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": exc.kind, "message": exc.message},
    )


async def validation_error_handler(request: Request, exc: ValidationFailedError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": exc.kind, "message": exc.message, "details": exc.to_list()},
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body / parameter parsing failures detected by FastAPI itself."""
    details = [
        FieldError(
            field_path=".".join(str(part) for part in error.get("loc", ())),
            message=error.get("msg", "Invalid value"),
            code=error.get("type", "invalid"),
        ).to_dict()
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_failed", "message": "Validation failed", "details": details},
    )


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": exc.kind, "message": exc.message},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        content = {"error": "not_found", "message": f"Route {request.method} {request.url.path} not found"}
    else:
        content = {"error": "http_error", "message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    content = {"error": "internal_error", "message": "Internal Server Error"}
    if settings.environment == "development":
        content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    log_with_context(
        logger,
        "error",
        "Store error",
        request_id=_request_id(request),
        path=request.url.path,
        error=exc.message,
        code=exc.code,
    )
    return _internal_error(request, exc)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error",
        extra={"request_id": _request_id(request), "path": request.url.path},
        exc_info=exc,
    )
    return _internal_error(request, exc)


def register_exception_handlers(app: FastAPI) -> None:
    """Install every gateway exception handler on ``app``."""
    app.add_exception_handler(ClientInputError, client_input_error_handler)
    app.add_exception_handler(ValidationFailedError, validation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
