"""
Sliding-window rate limiter: in-memory window, Redis fallback, and the
global middleware.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from lifeline.api.middleware.rate_limit import (
    RateLimitMiddleware,
    SlidingWindowRateLimiter,
    rate_limit,
    set_rate_limiter,
)


class TestSlidingWindow:

    async def test_memory_window_counts_per_key(self):
        limiter = SlidingWindowRateLimiter(backend="memory")
        results = [await limiter.hit("sos:1.2.3.4", 2, 60) for _ in range(3)]
        assert results == [(False, 1), (False, 2), (True, 3)]

        assert await limiter.hit("sos:5.6.7.8", 2, 60) == (False, 1)

    async def test_old_hits_leave_the_window(self):
        limiter = SlidingWindowRateLimiter(backend="memory")
        with patch("lifeline.api.middleware.rate_limit.time.time", return_value=1000.0):
            await limiter.hit("k", 1, 60)
            assert (await limiter.hit("k", 1, 60))[0] is True
        with patch("lifeline.api.middleware.rate_limit.time.time", return_value=1061.0):
            assert await limiter.hit("k", 1, 60) == (False, 1)

    async def test_idle_keys_are_evicted(self):
        """Should forget clients that have been quiet for a full window"""
        limiter = SlidingWindowRateLimiter(backend="memory")
        with patch("lifeline.api.middleware.rate_limit.time.time", return_value=1000.0):
            for i in range(1000):
                await limiter.hit(f"global_rl:10.0.{i // 256}.{i % 256}", 200, 60)
        assert len(limiter._memory) == 1000

        with patch("lifeline.api.middleware.rate_limit.time.time", return_value=4600.0):
            await limiter.hit("global_rl:192.168.1.1", 200, 60)
        assert list(limiter._memory) == ["global_rl:192.168.1.1"]

    async def test_keys_inside_their_window_survive_a_sweep(self):
        limiter = SlidingWindowRateLimiter(backend="memory")
        with patch("lifeline.api.middleware.rate_limit.time.time", return_value=1000.0):
            await limiter.hit("short", 5, 10)
            await limiter.hit("long", 1, 3600)
        with patch("lifeline.api.middleware.rate_limit.time.time", return_value=1100.0):
            assert await limiter.hit("long", 1, 3600) == (True, 2)
        assert "short" not in limiter._memory

    async def test_reset(self):
        limiter = SlidingWindowRateLimiter(backend="memory")
        await limiter.hit("k", 1, 60)
        limiter.reset()
        assert await limiter.hit("k", 1, 60) == (False, 1)

    async def test_redis_error_falls_back_to_memory(self):
        limiter = SlidingWindowRateLimiter(backend="redis", redis_url="redis://unused:6379/0")
        with patch.object(limiter, "_hit_redis", AsyncMock(side_effect=ConnectionError("redis down"))):
            assert await limiter.hit("k", 1, 60) == (False, 1)
            assert await limiter.hit("k", 1, 60) == (True, 2)

    async def test_redis_result_is_used(self):
        limiter = SlidingWindowRateLimiter(backend="redis")
        with patch.object(limiter, "_hit_redis", AsyncMock(return_value=(True, 11))) as hit_redis:
            assert await limiter.hit("k", 10, 60) == (True, 11)
        hit_redis.assert_awaited_once_with("k", 10, 60)


@pytest.fixture
def limited_app():
    limiter = SlidingWindowRateLimiter(backend="memory")
    set_rate_limiter(limiter)

    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, max_requests=3, window_seconds=60)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.post("/strict", dependencies=[rate_limit(max_requests=1, window_seconds=30, key_prefix="strict")])
    async def strict():
        return {"ok": True}

    yield TestClient(app)
    set_rate_limiter(None)


class TestHttpLimits:

    def test_global_middleware(self, limited_app):
        for _ in range(3):
            assert limited_app.get("/ping").status_code == 200
        resp = limited_app.get("/ping")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"

    def test_route_dependency(self, limited_app):
        assert limited_app.post("/strict").status_code == 200
        resp = limited_app.post("/strict")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "30"

    def test_forwarded_for_is_the_key(self, limited_app):
        assert limited_app.post("/strict", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert limited_app.post("/strict", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.9"}).status_code == 200
        assert limited_app.post("/strict", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
