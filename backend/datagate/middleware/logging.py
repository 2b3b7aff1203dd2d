"""
Logging middleware for request/response tracking.

Logs one record per completed request with method, path, entity, status
code and latency. The level follows the outcome: 5xx responses log at
ERROR, 4xx at WARNING, everything else at INFO, and requests slower than
``slow_request_ms`` are flagged. Health probe paths log at DEBUG so
orchestrator polling does not flood the output. Unhandled exceptions are
logged with their traceback and re-raised.

Must be registered AFTER RequestIDMiddleware to access request_id.
"""

import logging
import time
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from datagate.core.logging_config import get_logger


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests and responses.

    Log output (JSON):
        {
            "timestamp": "2025-11-24T10:30:00.123456+00:00",
            "level": "INFO",
            "message": "GET /api/products 200",
            "method": "GET",
            "path": "/api/products",
            "entity": "products",
            "status_code": 200,
            "latency_ms": 12.5,
            "request_id": "abc-123"
        }
    """

    def __init__(
        self,
        app,
        api_prefix: str = "/api",
        slow_request_ms: float = 1000.0,
        quiet_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.api_prefix = api_prefix.rstrip("/")
        self.slow_request_ms = slow_request_ms
        self.quiet_paths = frozenset(quiet_paths or ("/health", "/health/ready"))

    def entity_for(self, path: str) -> Optional[str]:
        """First path segment under the API prefix, if any."""
        prefix = f"{self.api_prefix}/"
        if not path.startswith(prefix):
            return None
        segment = path[len(prefix):].split("/", 1)[0]
        return segment or None

    def level_for(self, path: str, status_code: int) -> int:
        if status_code >= 500:
            return logging.ERROR
        if status_code >= 400:
            return logging.WARNING
        if path in self.quiet_paths:
            return logging.DEBUG
        return logging.INFO

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        method = request.method
        path = request.url.path
        context = {
            "method": method,
            "path": path,
            "entity": self.entity_for(path),
            "request_id": getattr(request.state, "request_id", None),
        }

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"{method} {path} failed: {exc}",
                extra={
                    **context,
                    "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "exception_type": type(exc).__name__,
                },
                exc_info=True,
            )
            raise

        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
        slow = latency_ms >= self.slow_request_ms
        level = self.level_for(path, response.status_code)
        if slow:
            level = max(level, logging.WARNING)

        logger.log(
            level,
            f"{method} {path} {response.status_code}",
            extra={
                **context,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "slow": slow or None,
            },
        )
        return response
