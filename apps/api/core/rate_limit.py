"""
Rate Limiting Middleware

Fixed-window counter per client and endpoint, stored in Redis.
Fails open when Redis is unavailable.
"""
import time
import logging
from typing import Dict, Optional, Tuple
from fastapi import Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from core.cache import get_redis_client

logger = logging.getLogger(__name__)

EXEMPT_PATHS = ("/health", "/ping", "/docs", "/openapi.json", "/redoc")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware."""

    def __init__(
        self,
        app,
        default_limit: int = 60,
        window: int = 60,
        endpoint_limits: Optional[Dict[str, int]] = None,
    ):
        super().__init__(app)
        self.default_limit = default_limit
        self.window = window  # Time window in seconds

        # Per-endpoint limits (requests per window), prefix matched
        self.endpoint_limits = endpoint_limits if endpoint_limits is not None else {
            "/v1/insights": settings.INSIGHT_RATE_LIMIT_PER_MINUTE,
        }

    async def dispatch(self, request: Request, call_next):
        if not settings.RATE_LIMIT_ENABLED:
            return await call_next(request)

        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client_id = self._get_client_id(request)
        limit = self._get_endpoint_limit(request.url.path)

        allowed, remaining, reset_time = self._check_rate_limit(
            client_id=client_id,
            endpoint=request.url.path,
            limit=limit,
            window=self.window
        )

        if not allowed:
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": "Rate limit exceeded",
                    "limit": limit,
                    "window": self.window,
                    "reset_at": reset_time
                },
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": str(remaining),
                    "X-RateLimit-Reset": str(reset_time),
                    "Retry-After": str(max(0, int(reset_time - time.time())))
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_time)

        return response

    def _get_client_id(self, request: Request) -> str:
        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    def _get_endpoint_limit(self, path: str) -> int:
        if path in self.endpoint_limits:
            return self.endpoint_limits[path]

        for endpoint, limit in self.endpoint_limits.items():
            if path.startswith(endpoint):
                return limit

        return self.default_limit

    def _check_rate_limit(
        self,
        client_id: str,
        endpoint: str,
        limit: int,
        window: int
    ) -> Tuple[bool, int, int]:
        """
        Count this request against the current window.

        Returns:
            (allowed, remaining, reset_time)
        """
        redis_client = get_redis_client()

        if not redis_client:
            logger.warning("Redis unavailable, skipping rate limit check")
            return True, limit, int(time.time()) + window

        key = f"rate_limit:{client_id}:{endpoint}"

        try:
            current = redis_client.get(key)

            if current is None:
                redis_client.setex(key, window, 1)
                return True, limit - 1, int(time.time()) + window

            if int(current) >= limit:
                ttl = redis_client.ttl(key)
                reset_time = int(time.time()) + (ttl if ttl > 0 else window)
                return False, 0, reset_time

            new_count = redis_client.incr(key)

            # Key expired between get and incr
            if new_count == 1:
                redis_client.expire(key, window)

            remaining = max(0, limit - new_count)
            ttl = redis_client.ttl(key)
            reset_time = int(time.time()) + (ttl if ttl > 0 else window)

            return True, remaining, reset_time

        except RedisError as e:
            # Fail open
            logger.error(f"Rate limit check error: {e}")
            return True, limit, int(time.time()) + window
