"""
Rate limiting using a Redis sliding window.

Usage:
    from lifeline.api.middleware.rate_limit import rate_limit

    # As a dependency on a route:
    @router.post("/sos", dependencies=[rate_limit(max_requests=3, window_seconds=60, key_prefix="sos")])
    async def trigger_sos(...):
        ...

    # Global middleware is attached in main.py via RateLimitMiddleware.

The limiter is injectable: routes resolve it through ``get_rate_limiter``
(overridable with ``app.dependency_overrides``) and ``set_rate_limiter``
swaps the process-wide instance, e.g. for an in-memory one in tests.
"""

import time
import logging
from typing import Optional

from fastapi import Request, HTTPException, Depends
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from lifeline.config import get_settings

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Counts hits per key over a sliding window.

    ``backend="redis"`` keeps one sorted set per key so every worker shares
    the window; ``backend="memory"`` is single-process only. A Redis error
    degrades to the in-memory window instead of failing the request.

    Memory keys expire like their Redis counterparts: a key idle for a full
    window is dropped by the next sweep, which runs at most once per
    ``SWEEP_INTERVAL_SECONDS``.
    """

    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self, backend: str = "redis", redis_url: Optional[str] = None):
        self.backend = backend
        self.redis_url = redis_url
        self._redis = None
        self._memory: dict[str, list[float]] = {}
        self._memory_expiry: dict[str, float] = {}
        self._last_sweep = 0.0

    def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self.redis_url or get_settings().REDIS_URL, decode_responses=True)
        return self._redis

    async def _hit_redis(self, key: str, max_requests: int, window: int) -> tuple[bool, int]:
        now = time.time()
        pipeline = self._client().pipeline()
        pipeline.zremrangebyscore(key, 0, now - window)
        pipeline.zadd(key, {str(now): now})
        pipeline.zcard(key)
        pipeline.expire(key, window)
        results = await pipeline.execute()
        count = results[2]
        return count > max_requests, count

    def _sweep_memory(self, now: float) -> None:
        idle = [key for key, expires_at in self._memory_expiry.items() if expires_at <= now]
        for key in idle:
            del self._memory[key]
            del self._memory_expiry[key]
        self._last_sweep = now
        if idle:
            logger.debug("Rate limiter dropped %d idle key(s)", len(idle))

    def _hit_memory(self, key: str, max_requests: int, window: int) -> tuple[bool, int]:
        now = time.time()
        if now - self._last_sweep >= self.SWEEP_INTERVAL_SECONDS:
            self._sweep_memory(now)
        # Remove expired entries
        hits = [t for t in self._memory.get(key, []) if t > now - window]
        hits.append(now)
        self._memory[key] = hits
        self._memory_expiry[key] = now + window
        return len(hits) > max_requests, len(hits)

    async def hit(self, key: str, max_requests: int, window: int) -> tuple[bool, int]:
        """Record one request for *key*; returns ``(exceeded, count)``."""
        if self.backend == "redis":
            try:
                return await self._hit_redis(key, max_requests, window)
            except Exception as exc:
                logger.warning("Redis rate limiter unavailable (%s), using in-memory window", exc)
        return self._hit_memory(key, max_requests, window)

    def reset(self) -> None:
        self._memory.clear()
        self._memory_expiry.clear()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


_limiter: Optional[SlidingWindowRateLimiter] = None


def get_rate_limiter() -> SlidingWindowRateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = SlidingWindowRateLimiter(backend=get_settings().RATE_LIMIT_BACKEND)
    return _limiter


def set_rate_limiter(limiter: Optional[SlidingWindowRateLimiter]) -> None:
    global _limiter
    _limiter = limiter


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, respecting X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(
    max_requests: int = 60,
    window_seconds: int = 60,
    key_prefix: str = "rl",
):
    """FastAPI dependency for per-route rate limiting.

    Args:
        max_requests: Maximum requests allowed in the window.
        window_seconds: Sliding window size in seconds.
        key_prefix: Limiter bucket; routes sharing a prefix share the window.
    """

    async def _dependency(
        request: Request,
        limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    ):
        key = f"{key_prefix}:{_get_client_ip(request)}"
        exceeded, _ = await limiter.hit(key, max_requests, window_seconds)
        if exceeded:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Max {max_requests} requests per {window_seconds}s.",
                headers={"Retry-After": str(window_seconds)},
            )

    return Depends(_dependency)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Global rate limiting middleware.

    Applies a generous global limit to all requests per IP.
    Use the `rate_limit()` dependency for stricter per-route limits.
    """

    def __init__(
        self,
        app,
        max_requests: int = 200,
        window_seconds: int = 60,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next):
        key = f"global_rl:{_get_client_ip(request)}"
        exceeded, _ = await get_rate_limiter().hit(key, self.max_requests, self.window_seconds)

        if exceeded:
            return JSONResponse(
                status_code=429,
                content={
                    "detail": f"Rate limit exceeded. Max {self.max_requests} requests per {self.window_seconds}s."
                },
                headers={"Retry-After": str(self.window_seconds)},
            )

        response = await call_next(request)
        return response
