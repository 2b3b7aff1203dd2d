"""
Request ID middleware for correlation tracking.

Reuses the caller's X-Request-ID header when it is a plausible id (at most
128 characters of letters, digits, '.', '_' and '-'), otherwise generates
a UUID. The id is stored on ``request.state.request_id`` for the error
handlers, published to ``request_id_var`` so every log record emitted
while serving the request carries it, and echoed back in the response.
"""

import re
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from datagate.core.logging_config import request_id_var

REQUEST_ID_HEADER = "X-Request-ID"

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def resolve_request_id(header_value: Optional[str]) -> str:
    """Return the caller's id if acceptable, else a fresh UUID4."""
    if header_value and _VALID_REQUEST_ID.match(header_value):
        return header_value
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add request ID correlation to all requests.

    Example:
        app.add_middleware(RequestIDMiddleware)
    """

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
