"""
Rate limiting middleware using token bucket algorithm.

Each client gets a bucket holding ``requests`` tokens that refills at
``requests / window_seconds`` tokens per second, so a client can burst up
to the full allowance and then sustains the configured rate. Requests
without a token are rejected with 429.

Note: buckets live in process memory; they are not shared across workers.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Tuple

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Token bucket for rate limiting.

    Attributes:
        capacity: Maximum number of tokens in the bucket
        refill_rate: Number of tokens added per second
        tokens: Current number of available tokens
        last_refill: Monotonic timestamp of last refill operation
    """

    def __init__(self, capacity: int, refill_rate: float, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self._clock = clock
        self.last_refill = clock()

    def consume(self, tokens: int = 1) -> bool:
        """
        Attempt to consume tokens, refilling for the elapsed time first.

        Returns:
            True if tokens were available and consumed, False otherwise
        """
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def get_wait_time(self) -> float:
        """Seconds until the next token is available."""
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-client rate limiting.

    Example:
        app.add_middleware(
            RateLimitMiddleware,
            requests=100,
            window_seconds=900,
        )
    """

    def __init__(
        self,
        app,
        requests: int = 100,
        window_seconds: int = 900,
        exempt_paths: Iterable[str] = ("/health",),
        cleanup_interval: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.requests = requests
        self.window_seconds = window_seconds
        self.exempt_paths = tuple(exempt_paths)
        self.cleanup_interval = cleanup_interval
        self._clock = clock

        # {client: (bucket, last_access_time)}
        self.buckets: Dict[str, Tuple[TokenBucket, float]] = {}
        self.last_cleanup = clock()

        logger.info(
            "Rate limiting initialized",
            extra={"requests": requests, "window_seconds": window_seconds},
        )

    def _get_client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _get_or_create_bucket(self, client: str) -> TokenBucket:
        now = self._clock()
        if now - self.last_cleanup > self.cleanup_interval:
            self._cleanup_old_buckets(now)

        if client in self.buckets:
            bucket, _ = self.buckets[client]
        else:
            bucket = TokenBucket(
                capacity=self.requests,
                refill_rate=self.requests / self.window_seconds,
                clock=self._clock,
            )
        self.buckets[client] = (bucket, now)
        return bucket

    def _cleanup_old_buckets(self, now: float) -> None:
        """Forget clients idle for a whole window (their bucket would be full anyway)."""
        stale = [
            client for client, (_, last_access) in self.buckets.items()
            if now - last_access > self.window_seconds
        ]
        for client in stale:
            del self.buckets[client]

        if stale:
            logger.info("Cleaned up old rate limit buckets", extra={"count": len(stale)})
        self.last_cleanup = now

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        path = request.url.path
        if any(path.endswith(exempt) or f"{exempt}/" in path for exempt in self.exempt_paths):
            return await call_next(request)

        client = self._get_client_ip(request)
        bucket = self._get_or_create_bucket(client)

        if not bucket.consume():
            retry_after = int(bucket.get_wait_time()) + 1
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "client_ip": client,
                    "path": path,
                    "limit": self.requests,
                    "retry_after": retry_after,
                    "request_id": getattr(request.state, "request_id", None),
                }
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "rate_limited",
                    "message": "Too many requests, please try again later",
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(self.requests),
                    "X-RateLimit-Remaining": "0",
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.requests)
        response.headers["X-RateLimit-Remaining"] = str(int(bucket.tokens))
        return response
