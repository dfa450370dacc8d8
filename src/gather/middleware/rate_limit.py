"""Redis-backed fixed window rate limiting middleware."""

import time
from collections.abc import Iterable
from typing import Any

from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gather.redis_client import get_redis


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limit requests per IP using Redis counters."""

    def __init__(
        self,
        app: Any,  # noqa: ANN401
        requests_per_window: int = 100,
        window_seconds: int = 60,
        exempt_paths: Iterable[str] = ("/health", "/ready"),
    ) -> None:
        super().__init__(app)
        self.exempt_paths = frozenset(exempt_paths)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Check the rate limit, return 429 if exceeded."""
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time()) // self.window_seconds
        rate_key = f"ratelimit:{client_ip}:{window}"

        try:
            redis = get_redis()
            pipe = redis.pipeline()
            pipe.incr(rate_key)
            pipe.expire(rate_key, self.window_seconds + 1)
            results: list[Any] = await pipe.execute()
        except (RuntimeError, RedisError):
            # Redis not initialized or unreachable: no rate limiting
            return await call_next(request)

        current_count: int = results[0]
        remaining = max(0, self.requests_per_window - current_count)
        if current_count > self.requests_per_window:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={
                    "Retry-After": str(self.window_seconds),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": str(self.requests_per_window),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_window)
        return response
